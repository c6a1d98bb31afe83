"""
Environment configuration shared by the order and payment services.

Every value is read once at import time; override through the environment.
"""

import os

SERVICE_VERSION = '1.0.0'
ENVIRONMENT = os.getenv('ENVIRONMENT', 'production')

# =============================================================================
# DOWNSTREAM SERVICE URLS
# =============================================================================
CART_SERVICE = os.getenv('CART_SERVICE_URL', 'http://cart-service:4400')
PRODUCT_SERVICE = os.getenv('PRODUCT_SERVICE_URL', 'http://product-service:4300')
PAYMENT_SERVICE = os.getenv('PAYMENT_SERVICE_URL', 'http://payment-service:4500')

UPSTREAM_TIMEOUT_SECONDS = float(os.getenv('UPSTREAM_TIMEOUT_SECONDS', '5'))
CART_PAGE_SIZE = int(os.getenv('CART_PAGE_SIZE', '50'))

# =============================================================================
# STORAGE
# =============================================================================
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///./commerce.db')
DB_ECHO = os.getenv('DB_ECHO', 'false').lower() == 'true'
DB_POOL_SIZE = int(os.getenv('DB_POOL_SIZE', '5'))
DB_MAX_OVERFLOW = int(os.getenv('DB_MAX_OVERFLOW', '10'))

# =============================================================================
# SETTLEMENT
# =============================================================================
TAX_RATE = float(os.getenv('TAX_RATE') or 0.15)
STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')

# =============================================================================
# AUTH
# =============================================================================
JWT_SECRET = os.getenv('JWT_SECRET', 'super-secret-super-secret-super-secret-super-secret')
JWT_ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
