"""
Configuration de l'application / Application configuration.
Utilise pydantic-settings pour charger depuis .env ou variables d'environnement.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "LiveTrack Dispatch"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = True

    # Database - SQLite par défaut pour le développement
    # Database - SQLite by default for development
    DATABASE_URL: str = "sqlite+aiosqlite:///./livetrack.db"

    # CORS - origines autorisées / allowed origins
    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # JWT (emis par le service d'auth externe / issued by the external auth service)
    SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Rate Limiting
    RATE_LIMIT_GPS: str = "120/minute"
    RATE_LIMIT_DEFAULT: str = "60/minute"

    # Suivi GPS / GPS tracking
    SAMPLE_INTERVAL_SECONDS: float = 1.0
    MIN_PUBLISH_INTERVAL_SECONDS: float = 1.0
    LOCATION_FIX_TIMEOUT_SECONDS: float = 10.0
    LOCATION_RETRY_MAX_DELAY_SECONDS: float = 30.0
    LIVENESS_WINDOW_SECONDS: float = 30.0
    RECONNECT_BASE_DELAY_SECONDS: float = 0.5
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0

    # ETA - 25 mph, vitesse urbaine moyenne / typical city speed
    AVERAGE_SPEED_KMH: float = 40.2335

    # Carte / Map
    MARKER_ANIMATION_MS: int = 1000
    MARKER_ANIMATION_FPS: int = 20

    # Affectation / Assignment
    ASSIGN_DRIVER_RETRIES: int = 3
    ASSIGN_RETRY_DELAY_SECONDS: float = 0.05

    # Transporteurs tiers / Third-party couriers
    DOORDASH_DEVELOPER_ID: str = ""
    DOORDASH_KEY_ID: str = ""
    DOORDASH_SIGNING_SECRET: str = ""
    DOORDASH_BASE_URL: str = "https://openapi.doordash.com"
    UBER_CLIENT_ID: str = ""
    UBER_CLIENT_SECRET: str = ""
    UBER_CUSTOMER_ID: str = ""
    UBER_AUTH_URL: str = "https://auth.uber.com/oauth/v2/token"
    UBER_BASE_URL: str = "https://api.uber.com/v1"
    UBER_WEBHOOK_SIGNING_KEY: str = ""
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
