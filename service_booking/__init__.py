"""
Booking Service package for the Hospital Booking platform.
"""
