"""
Policy configuration loading and maintenance.
"""
