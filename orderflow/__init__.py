"""
Order lifecycle engine.

Tracks a cart from creation through payment to fulfillment: legal state
transitions, repricing on every mutation, and pluggable policies for
promotions, tax, shipping, payments and cart merging.
"""

__version__ = "0.1.0"
