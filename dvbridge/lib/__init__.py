"""
Shared building blocks for the bridge services
"""
