"""Bidding Service - task bidding, payment, and live notifications."""

__version__ = "0.1.0"
