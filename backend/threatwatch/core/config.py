from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "threatwatch-backend"
    ENVIRONMENT: str = "local"
    LOG_LEVEL: str = "INFO"

    # Database
    POSTGRES_HOST: str = "db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "threatwatch"
    POSTGRES_USER: str = "threat_user"
    POSTGRES_PASSWORD: str = "threat_password"

    # Network controller (UniFi OS console)
    UNIFI_BASE_URL: str | None = None
    UNIFI_SITE: str = "default"
    UNIFI_USERNAME: str | None = None
    UNIFI_PASSWORD: str | None = None
    UNIFI_VERIFY_SSL: bool = False
    UNIFI_PAGE_SIZE: int = 500

    # Fernet key used for "encrypted" values in the settings store
    SETTINGS_ENCRYPTION_KEY: str | None = None

    # GeoLite2 databases (GeoLite2-City.mmdb / GeoLite2-ASN.mmdb)
    GEOIP_DATA_PATH: str = "/app/data"

    # Collection loop
    COLLECTION_ENABLED: bool = True
    COLLECTION_STARTUP_DELAY_SECONDS: int = 30
    DEFAULT_POLL_INTERVAL_MINUTES: int = 1
    DEFAULT_RETENTION_DAYS: int = 90

    # Alerting / Webhooks
    SLACK_ALERT_WEBHOOK_URL: str | None = None
    GENERIC_ALERT_WEBHOOK_URL: str | None = None

    # Construct SQLAlchemy URL
    @property
    def DATABASE_URL(self) -> str:
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
