"""
SLCAN codec and acknowledgement handling
"""
