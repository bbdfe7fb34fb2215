from pydantic_settings import BaseSettings, SettingsConfigDict
class Settings(BaseSettings):
    APP_ENV: str = "dev"
    APP_SECRET: str
    DB_URL: str
    JWT_ISS: str = "qahwa"
    JWT_EXP_MIN: int = 12*60
    BUSINESS_TZ: str = "Asia/Riyadh"
    CURRENCY: str = "SAR"
    LOG_LEVEL: str = "INFO"
    MOVEMENTS_DEFAULT_LIMIT: int = 50
    MOVEMENTS_MAX_LIMIT: int = 500
    ALERTS_LIMIT: int = 20
    REPORT_DEFAULT_DAYS: int = 30
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
settings = Settings()
