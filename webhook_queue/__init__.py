"""Payment Webhook Queue

Redis-backed background processing for payment-provider webhook events.
"""

__version__ = "0.1.0"
