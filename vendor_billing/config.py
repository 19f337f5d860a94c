from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VENDOR_BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Vendor Billing"
    database_url: str = "sqlite:///./vendor_billing.db"
    db_echo: bool = False
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000
    # carga vendor types y paquetes de ejemplo al arrancar
    seed_data: bool = True


settings = Settings()
