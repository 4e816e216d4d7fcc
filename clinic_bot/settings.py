import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    app_base_url: str
    jwt_secret: str
    jwt_expire_minutes: int
    database_url: str
    wasender_base_url: str
    wasender_access_token: str  # account-level token, only used to provision sessions
    wasender_timeout: float
    default_currency: str
    log_level: str

def load_settings() -> Settings:
    return Settings(
        app_base_url=os.getenv('APP_BASE_URL', 'http://localhost:8000'),
        jwt_secret=os.getenv('JWT_SECRET', 'change-me'),
        jwt_expire_minutes=int(os.getenv('JWT_EXPIRE_MINUTES', '1440')),
        database_url=os.getenv('DATABASE_URL', 'sqlite:///./clinic_bot.db'),
        wasender_base_url=os.getenv('WASENDER_BASE_URL', 'https://www.wasenderapi.com/api').rstrip('/'),
        wasender_access_token=os.getenv('WASENDER_ACCESS_TOKEN', ''),
        wasender_timeout=float(os.getenv('WASENDER_TIMEOUT', '10')),
        default_currency=os.getenv('DEFAULT_CURRENCY', 'USD'),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )
