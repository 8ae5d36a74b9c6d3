"""
bracketguard: bracket-order placement and orphaned-protection reconciliation
for USD-margined perpetual futures.
"""

__version__ = "1.0.0"
