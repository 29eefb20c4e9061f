"""Configuration management."""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Application configuration."""

    # Backend
    API_URL = os.getenv("SHELF_API_URL", "http://localhost:8080").rstrip("/")
    AUTH_PROVIDER = os.getenv("SHELF_AUTH_PROVIDER", "google")

    # Identity assertion used for sign-in and silent re-authentication
    ID_TOKEN = os.getenv("SHELF_ID_TOKEN")

    # Local session storage: "file" or "postgres"
    STORE = os.getenv("SHELF_STORE", "file")
    STORE_PATH = os.path.expanduser(os.getenv("SHELF_STORE_PATH", "~/.shelfscan/session.json"))

    # Database
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "shelfscan")
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "")

    @property
    def DATABASE_URL(self):
        """Build PostgreSQL connection string."""
        return f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Google Books
    GOOGLE_BOOKS_API_KEY = os.getenv("GOOGLE_BOOKS_API_KEY")

    # Defaults
    DEFAULT_TIMEOUT = int(os.getenv("DEFAULT_TIMEOUT", "30"))
    DEFAULT_MAX_RETRIES = int(os.getenv("DEFAULT_MAX_RETRIES", "3"))
