import os

from dotenv import load_dotenv

load_dotenv()

# Admin connection string; the initializer needs userAdmin + dbAdmin on DB_NAME
MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "fileUploader")

# Principal the upload service itself connects as
APP_DB_USER = os.getenv("APP_DB_USER", "fileUploader")
APP_DB_PASSWORD = os.getenv("APP_DB_PASSWORD", "password")

UPLOAD_TTL_SECONDS = int(os.getenv("UPLOAD_TTL_SECONDS", "604800"))  # 7 days
STALLED_THRESHOLD_SECONDS = int(os.getenv("STALLED_THRESHOLD_SECONDS", "1800"))
SWEEPER_INTERVAL = int(os.getenv("SWEEPER_INTERVAL", "30"))  # seconds

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
