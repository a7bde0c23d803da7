"""
Runtime settings for the Shop API.

Everything comes from environment variables (a local .env file is loaded
first when present).
"""
import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings:
    def __init__(self):
        self.database_url: str = os.getenv("DATABASE_URL", "sqlite:///./shop.db")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.cors_origins: List[str] = _split(os.getenv("CORS_ORIGINS", "*"))

        self.jwt_secret: str = os.getenv("JWT_SECRET", "change-me")
        self.jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")

        # UPI redirect gateway
        self.upi_merchant_id: str = os.getenv("UPI_MERCHANT_ID", "")
        self.upi_secret: str = os.getenv("UPI_SECRET", "")
        self.upi_base_url: str = os.getenv("UPI_BASE_URL", "https://api.upi-gateway.example/pg/v1")
        self.upi_redirect_url: str = os.getenv("UPI_REDIRECT_URL", "http://localhost:3000/payment/status")
        self.upi_callback_url: str = os.getenv("UPI_CALLBACK_URL", "http://localhost:8000/api/payments/webhook")
        self.upi_timeout: float = float(os.getenv("UPI_TIMEOUT", "10"))

        # Mail relay
        self.smtp_host: Optional[str] = os.getenv("SMTP_HOST") or None
        self.smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
        self.smtp_user: Optional[str] = os.getenv("SMTP_USER") or None
        self.smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD") or None
        self.from_email: str = os.getenv("FROM_EMAIL", "orders@shop.local")
        self.admin_email: Optional[str] = os.getenv("ADMIN_EMAIL") or None

        # Chatbot proxy
        self.chatbot_api_url: str = os.getenv(
            "CHATBOT_API_URL", "https://generativelanguage.googleapis.com/v1beta/models"
        )
        self.chatbot_api_key: Optional[str] = os.getenv("CHATBOT_API_KEY") or None
        self.chatbot_model: str = os.getenv("CHATBOT_MODEL", "gemini-1.5-flash-latest")
        self.chatbot_daily_limit: int = int(os.getenv("CHATBOT_DAILY_LIMIT", "20"))


settings = Settings()
