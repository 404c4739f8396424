"""
Attempt rate limiting for the booking service.
"""
