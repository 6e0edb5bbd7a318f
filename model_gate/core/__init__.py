"""
Core modules for Model Gate.

This package contains the decision engine and its collaborators: cost
estimation, blocked-model policy, threshold evaluation, the usage ledger
and the approval queue.
"""
