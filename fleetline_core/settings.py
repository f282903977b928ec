"""
Django settings for FLEETLINE project.
Delivery logistics client core

Configuration for:
- Remote delivery/wallet backend (REST + Bearer token)
- Pricing engine constants
- Session credential storage (Django cache)
"""

from pathlib import Path
from decouple import config, Csv

# ===========================================
# BASE CONFIGURATION
# ===========================================
BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config('SECRET_KEY', default='dev-secret-key-change-in-production')
DEBUG = config('DEBUG', default=True, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())

# ===========================================
# APPLICATION DEFINITION
# ===========================================
INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',

    # Third Party
    'rest_framework',

    # FLEETLINE Apps
    'core.apps.CoreConfig',
    'logistics.apps.LogisticsConfig',
    'finance.apps.FinanceConfig',
    'integrations.apps.IntegrationsConfig',
    'reports.apps.ReportsConfig',
]

# ===========================================
# DATABASE
# ===========================================
# Persistent state lives in the remote backend; entities are mirrored in memory.
DATABASES = {}

# ===========================================
# INTERNATIONALIZATION
# ===========================================
LANGUAGE_CODE = 'en-us'
TIME_ZONE = config('TIME_ZONE', default='Asia/Kolkata')
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ===========================================
# CACHE (session credential storage)
# ===========================================
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'fleetline-session',
    }
}

CREDENTIAL_CACHE_KEY = config('CREDENTIAL_CACHE_KEY', default='fleetline_credential_token')
CREDENTIAL_CACHE_TTL = config('CREDENTIAL_CACHE_TTL', default=60 * 60 * 12, cast=int)  # 12h

# ===========================================
# REMOTE BACKEND
# ===========================================
BACKEND_BASE_URL = config(
    'BACKEND_BASE_URL',
    default='https://finallogisticsvishnubackend.onrender.com/api'
)
BACKEND_TIMEOUT = config('BACKEND_TIMEOUT', default=15, cast=int)             # seconds
BACKEND_READ_RETRIES = config('BACKEND_READ_RETRIES', default=3, cast=int)    # GET only

# ===========================================
# BUSINESS RULES - PRICING ENGINE
# ===========================================
PRICING_BASE_PRICE = config('PRICING_BASE_PRICE', default='50')
PRICING_WEIGHT_RATE = config('PRICING_WEIGHT_RATE', default='10')       # per kg
PRICING_DISTANCE_RATE = config('PRICING_DISTANCE_RATE', default='8')    # per km
PRICING_CLUSTER_CHARGES = {
    'Small': '0',
    'Medium': '50',
    'Large': '100',
    'Extra Large': '200',
}
CURRENCY_SYMBOL = config('CURRENCY_SYMBOL', default='₹')

# ===========================================
# LOGGING CONFIGURATION
# ===========================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {process:d} {thread:d} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': config('DJANGO_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
        'fleetline.security': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
