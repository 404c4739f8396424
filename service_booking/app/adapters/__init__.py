"""
Booking data adapters.
"""
