"""Friendtrack - real-time friend location sharing."""

__version__ = '0.1.0'
