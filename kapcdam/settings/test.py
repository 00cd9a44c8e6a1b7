from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'kapcdam-test',
    }
}

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

ALLOWED_HOSTS = ['testserver']

PUBLIC_BASE_URL = 'https://shop.example.org'
PESAPAL_API_URL = 'https://pesapal.test/api'
PESAPAL_CONSUMER_KEY = 'key'
PESAPAL_CONSUMER_SECRET = 'secret'
PESAPAL_IPN_ID = 'ipn-test'
PESAPAL_RETRY_BACKOFF = 0
PAYMENTS_ADMIN_EMAILS = 'admin@kapcdam.org'
PAYMENTS_WEBHOOK_RATE_LIMITER = 'memory'
