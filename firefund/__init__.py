"""
FireFund - donation tracking for fire-brigade calendar campaigns
"""

__version__ = "1.0.0"
