import os
import re

class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///escrow.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Dev mode: relaxes startup checks (generated API key, unchecked contract address)
    # Defaults to False, must be explicitly enabled via DEV_MODE=true
    DEV_MODE = os.environ.get('DEV_MODE', 'false').lower() in ('true', '1', 'yes')

    # Chain (Base L2)
    RPC_URL = os.environ.get('RPC_URL', 'https://mainnet.base.org')
    RPC_TIMEOUT_SECONDS = int(os.environ.get('RPC_TIMEOUT_SECONDS', '30'))
    CHAIN_NAME = os.environ.get('CHAIN_NAME', 'Base (8453)')
    ESCROW_ADDRESS = os.environ.get('ESCROW_ADDRESS', '0x80B2880C6564c6a9Bc1219686eF144e7387c20a3')
    ESCROW_ABI_PATH = os.environ.get('ESCROW_ABI_PATH', '')
    START_BLOCK = int(os.environ.get('START_BLOCK', '41000000'))

    # Sync engine
    SYNC_ENABLED = os.environ.get('SYNC_ENABLED', 'true').lower() in ('true', '1', 'yes')
    SYNC_CHUNK_SIZE = int(os.environ.get('SYNC_CHUNK_SIZE', '5000'))
    SYNC_CHUNK_RETRIES = int(os.environ.get('SYNC_CHUNK_RETRIES', '3'))
    SYNC_RETRY_BACKOFF = float(os.environ.get('SYNC_RETRY_BACKOFF', '1.0'))  # seconds, doubled per retry
    SYNC_INTERVAL_SECONDS = int(os.environ.get('SYNC_INTERVAL_SECONDS', '120'))
    # When True, illegal job status transitions are logged and NOT applied
    STRICT_TRANSITIONS = os.environ.get('STRICT_TRANSITIONS', 'false').lower() in ('true', '1', 'yes')

    # Manual sync trigger auth (X-API-Key header)
    API_KEY = os.environ.get('API_KEY', '')

    # Rate limits (requests per minute, per client IP)
    RATE_LIMIT_PER_MINUTE = int(os.environ.get('RATE_LIMIT_PER_MINUTE', '100'))
    SYNC_RATE_LIMIT_PER_MINUTE = int(os.environ.get('SYNC_RATE_LIMIT_PER_MINUTE', '5'))

    @classmethod
    def validate_production(cls):
        """Startup check: refuse unsafe configuration outside DEV_MODE."""
        if cls.DEV_MODE:
            return
        if not cls.API_KEY:
            raise RuntimeError(
                "FATAL: API_KEY must be set in production. "
                "Set the API_KEY environment variable to protect POST /sync, "
                "or set DEV_MODE=true for development."
            )
        if not re.match(r'^0x[0-9a-fA-F]{40}$', cls.ESCROW_ADDRESS):
            raise RuntimeError(
                "FATAL: ESCROW_ADDRESS is not a valid contract address. "
                "Expected 0x followed by 40 hex characters."
            )
