"""
Booking domain models.
"""
