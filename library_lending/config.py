import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    APP_NAME: str = os.getenv("APP_NAME", "library-lending")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./library.db")
    # Seconds a SQLite writer waits for the database lock before giving up.
    SQLITE_BUSY_TIMEOUT: float = float(os.getenv("SQLITE_BUSY_TIMEOUT", "15"))

    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "admin-token-123")
    USER_API_KEY: str = os.getenv("USER_API_KEY", "user-token-456")


settings = Settings()
