"""
Personal Ledger - Source Package

Keeps account balances consistent with the transactions posted against
them, and bills recurring subscriptions into the ledger once a day.

DESIGN PRINCIPLES:
1. One primitive changes balances; every write path goes through it
2. A record write and its balance effect commit together or not at all
3. Fail early, fail visibly
4. Every ledger mutation is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Personal Ledger Team"
