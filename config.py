"""
Runtime configuration for the AgriConnect API.

Everything is read from environment variables. Values are captured once per
process by get_settings(); tests clear the cache after changing the env.
"""
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    database_name: Optional[str]
    port: int
    environment: str
    log_level: Optional[str]
    email_backend: str
    email_host: str
    email_port: int
    email_user: Optional[str]
    email_pass: Optional[str]
    order_status_policy: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME"),
        port=int(os.getenv("PORT", 8000)),
        environment=os.getenv("ENVIRONMENT", "development").lower(),
        log_level=os.getenv("LOG_LEVEL"),
        email_backend=os.getenv("EMAIL_BACKEND", "smtp").lower(),
        email_host=os.getenv("EMAIL_HOST", "smtp.gmail.com"),
        email_port=int(os.getenv("EMAIL_PORT", 465)),
        email_user=os.getenv("EMAIL_USER"),
        email_pass=os.getenv("EMAIL_PASS"),
        order_status_policy=os.getenv("ORDER_STATUS_POLICY", "permissive").lower(),
    )
