"""
Dropship Engine

Supplier integration and order-fulfillment reconciliation: fans paid
customer orders out to dropshipping suppliers, keeps supplier tokens alive
under strict rate limits, and reconciles supplier shipment status back into
order fulfillment state.
"""
__version__ = "1.0.0"
