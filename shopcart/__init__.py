"""
Cart pricing and stock-reservation core for a multi-tenant storefront.
"""
__version__ = "1.0.0"
