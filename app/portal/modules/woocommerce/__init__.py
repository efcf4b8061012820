"""
WooCommerce Subscriptions integration: REST client, signed webhook receiver and full sync.
"""
