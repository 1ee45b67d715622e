"""
AmazôniaExperience backend - check-ins, AmaCoins ledger and reward redemptions
"""
__version__ = "1.0.0"
