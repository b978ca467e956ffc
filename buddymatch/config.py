import os
from dotenv import load_dotenv

load_dotenv()

POSTGRES_USER = os.getenv('POSTGRES_USER', 'buddymatch')
POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', 'buddymatch')
POSTGRES_DB = os.getenv('POSTGRES_DB', 'buddymatch')
POSTGRES_HOST = os.getenv('POSTGRES_HOST', 'localhost')
POSTGRES_PORT = int(os.getenv('POSTGRES_PORT', 5432))
STORE_BACKEND = os.getenv('STORE_BACKEND', 'sql')  # 'sql' | 'memory'
REDIS_URL = os.getenv("REDIS_PUBLIC_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))

TRANSACTION_MAX_ATTEMPTS = int(os.getenv('TRANSACTION_MAX_ATTEMPTS', 5))

# Presence lease
PRESENCE_GRACE_MINUTES = int(os.getenv('PRESENCE_GRACE_MINUTES', 5))
MAX_SESSIONS_PER_HOUR = int(os.getenv('MAX_SESSIONS_PER_HOUR', 100))  # 0 disables the limit
MIN_DURATION_MINUTES = int(os.getenv('MIN_DURATION_MINUTES', 15))
MAX_DURATION_MINUTES = int(os.getenv('MAX_DURATION_MINUTES', 240))

# Offers
OFFER_TTL_MINUTES = int(os.getenv('OFFER_TTL_MINUTES', 10))
MAX_ACTIVE_OFFERS = int(os.getenv('MAX_ACTIVE_OFFERS', 3))

# Matches nobody acts on are cancelled by the sweeper
PENDING_MATCH_TIMEOUT_MINUTES = int(os.getenv('PENDING_MATCH_TIMEOUT_MINUTES', 15))

# Expiry sweeper
SWEEP_INTERVAL_SECONDS = int(os.getenv('SWEEP_INTERVAL_SECONDS', 300))
SWEEP_BATCH_SIZE = int(os.getenv('SWEEP_BATCH_SIZE', 100))

IDEMPOTENCY_TTL_SECONDS = int(os.getenv('IDEMPOTENCY_TTL_SECONDS', 2 * 60 * 60))
