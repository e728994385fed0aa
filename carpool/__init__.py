"""
Carpool Matching Engine

Groups attendees leaving an event into shared rides.
"""

__version__ = "0.1.0"
