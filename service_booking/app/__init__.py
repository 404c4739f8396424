"""
Booking service application: cached booking reads, invalidating writes
and the admin surfaces for both.
"""
