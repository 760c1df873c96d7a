import os

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # dotenv is optional for production, but useful locally

class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker + result backend) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telnyx (outbound messages) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")

    # --- Status webhook ---
    WHATSAPP_APP_SECRET = os.environ.get("WHATSAPP_APP_SECRET")
    WHATSAPP_VERIFY_TOKEN = os.environ.get("WHATSAPP_VERIFY_TOKEN")

    # --- Business / notifications ---
    BUSINESS_NAME = os.environ.get("BUSINESS_NAME", "the salon")
    MANAGER_PHONE = os.environ.get("MANAGER_PHONE")
    # Olson name; weekend scoring and message times use the salon calendar
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "Europe/Berlin")

    # --- Escalation timing ---
    READ_CHECK_DELAY_MINUTES = int(os.environ.get("READ_CHECK_DELAY_MINUTES", "120"))
    ESCALATION_DELAY_MINUTES = int(os.environ.get("ESCALATION_DELAY_MINUTES", "240"))
    SCHEDULE_MAX_ATTEMPTS = int(os.environ.get("SCHEDULE_MAX_ATTEMPTS", "5"))
    ORPHAN_SWEEP_INTERVAL_SECONDS = float(os.environ.get("ORPHAN_SWEEP_INTERVAL_SECONDS", "600"))
    ORPHAN_GRACE_MINUTES = int(os.environ.get("ORPHAN_GRACE_MINUTES", "15"))

    # --- Cost gate ---
    HIGH_VALUE_THRESHOLD = float(os.environ.get("HIGH_VALUE_THRESHOLD", "100"))

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

settings = Settings()
