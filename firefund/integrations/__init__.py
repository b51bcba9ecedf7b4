"""
FireFund integrations - external workflow services
"""
