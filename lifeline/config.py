import os

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_PATH = os.getenv("DATABASE_PATH", "lifeline.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "true").lower() == "true"

# Dispatch
HOSPITAL_SEARCH_RADIUS_METERS = float(os.getenv("HOSPITAL_SEARCH_RADIUS_METERS", "20000"))
# Hard ceiling of one second for route estimates
ROUTE_ESTIMATE_TIMEOUT_SECONDS = min(float(os.getenv("ROUTE_ESTIMATE_TIMEOUT_SECONDS", "1.0")), 1.0)

# Google Maps Directions API (optional, falls back to straight-line estimate)
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")
FALLBACK_SPEED_KMH = float(os.getenv("FALLBACK_SPEED_KMH", "40"))

# Outbound SMS/e-mail gateway webhook (optional)
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_WEBHOOK_TIMEOUT = float(os.getenv("NOTIFY_WEBHOOK_TIMEOUT", "5.0"))
NOTIFICATION_QUEUE_SIZE = int(os.getenv("NOTIFICATION_QUEUE_SIZE", "1000"))
