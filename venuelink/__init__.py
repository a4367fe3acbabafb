"""
venuelink - network resilience and realtime synchronization for the venue
management backend.
"""

__version__ = "0.1.0"
