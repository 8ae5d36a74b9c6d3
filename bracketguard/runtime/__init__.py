"""
Runtime wiring (service lifecycle).
"""
from bracketguard.runtime.service import BracketGuardService

__all__ = [
    "BracketGuardService",
]
