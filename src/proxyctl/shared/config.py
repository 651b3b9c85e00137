"""Centralized configuration management for the proxy route controller."""

import os
from typing import Optional
from functools import lru_cache


class Config:
    """Configuration class with all environment variables."""

    # API Configuration
    API_HOST: str = os.getenv('API_HOST', '127.0.0.1')
    API_PORT: int = int(os.getenv('API_PORT', '9000'))
    API_URL: str = os.getenv('API_URL', 'http://localhost:9000')

    # Redis Configuration (optional persistence)
    REDIS_URL: Optional[str] = os.getenv('REDIS_URL')
    REDIS_PASSWORD: Optional[str] = os.getenv('REDIS_PASSWORD')

    # Logging
    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO').upper()

    # Certificate Configuration
    RSA_KEY_SIZE: int = int(os.getenv('RSA_KEY_SIZE', '2048'))
    STATIC_CERT_LIFETIME_DAYS: int = int(os.getenv('STATIC_CERT_LIFETIME_DAYS', '3650'))

    # ACME Configuration
    ACME_DIRECTORY_URL: str = os.getenv('ACME_DIRECTORY_URL',
        'https://acme-v02.api.letsencrypt.org/directory')
    ACME_EMAIL: Optional[str] = os.getenv('ACME_EMAIL')
    ACME_CHALLENGE_HOST: str = os.getenv('ACME_CHALLENGE_HOST', '0.0.0.0')
    ACME_CHALLENGE_PORT: int = int(os.getenv('ACME_CHALLENGE_PORT', '80'))
    ACME_TIMEOUT_SECONDS: int = int(os.getenv('ACME_TIMEOUT_SECONDS', '90'))

    # Certificate Management
    RENEWAL_CHECK_INTERVAL: int = int(os.getenv('RENEWAL_CHECK_INTERVAL', '86400'))  # 24 hours
    RENEWAL_THRESHOLD_DAYS: int = int(os.getenv('RENEWAL_THRESHOLD_DAYS', '30'))
    RENEWAL_BACKOFF_INITIAL: int = int(os.getenv('RENEWAL_BACKOFF_INITIAL', '3600'))  # 1 hour
    RENEWAL_BACKOFF_MAX: int = int(os.getenv('RENEWAL_BACKOFF_MAX', '86400'))  # 24 hours
    CERT_GEN_MAX_WORKERS: int = int(os.getenv('CERT_GEN_MAX_WORKERS', '5'))

    # Proxy state
    PROXY_HISTORY_SIZE: int = int(os.getenv('PROXY_HISTORY_SIZE', '1000'))

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration values."""
        errors = []

        # Check port ranges
        if not (1 <= cls.API_PORT <= 65535):
            errors.append(f"API_PORT must be between 1 and 65535, got {cls.API_PORT}")

        if not (1 <= cls.ACME_CHALLENGE_PORT <= 65535):
            errors.append(f"ACME_CHALLENGE_PORT must be between 1 and 65535, got {cls.ACME_CHALLENGE_PORT}")

        if cls.ACME_TIMEOUT_SECONDS <= 0:
            errors.append("ACME_TIMEOUT_SECONDS must be positive")

        # Check backoff hierarchy
        if cls.RENEWAL_BACKOFF_INITIAL <= 0:
            errors.append("RENEWAL_BACKOFF_INITIAL must be positive")

        if cls.RENEWAL_BACKOFF_INITIAL > cls.RENEWAL_BACKOFF_MAX:
            errors.append("RENEWAL_BACKOFF_INITIAL must not exceed RENEWAL_BACKOFF_MAX")

        if cls.RENEWAL_THRESHOLD_DAYS <= 0:
            errors.append("RENEWAL_THRESHOLD_DAYS must be positive")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")

    @classmethod
    def get_redis_url_with_password(cls) -> Optional[str]:
        """Get Redis URL with password if configured."""
        if cls.REDIS_PASSWORD and cls.REDIS_URL:
            # Parse and reconstruct URL with password
            from urllib.parse import urlparse, urlunparse
            parsed = urlparse(cls.REDIS_URL)
            if not parsed.password:
                # Add password to URL
                netloc = f":{cls.REDIS_PASSWORD}@{parsed.hostname}"
                if parsed.port:
                    netloc += f":{parsed.port}"
                return urlunparse((
                    parsed.scheme,
                    netloc,
                    parsed.path,
                    parsed.params,
                    parsed.query,
                    parsed.fragment
                ))
        return cls.REDIS_URL


@lru_cache()
def get_config() -> Config:
    """Get validated configuration instance."""
    Config.validate()
    return Config()
