"""Purchase fulfillment pipeline.

Consumes token-fulfillment and order-fulfillment queues after confirmed
payments: credits token balances and submits print orders to Printful.
"""
