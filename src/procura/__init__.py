"""Procura - bidding lifecycle engine for procurement projects."""

__version__ = "0.1.0"
