"""
Long-running bridge services
"""
