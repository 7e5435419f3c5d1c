import os
from dotenv import load_dotenv

load_dotenv()

GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")

# Comma-separated: "google", "mock". Empty = google when a key is set, else mock.
PLACE_SOURCES = [s.strip() for s in os.getenv("PLACE_SOURCES", "").split(",") if s.strip()]

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:8000,http://localhost:3000").split(",")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# --- Scan ---
MAX_RADIUS_M = 1609.0      # 1 mile hard cap, not a default
CLOSING_SOON_MINUTES = 60

# Per (source, category) query timeout
QUERY_TIMEOUT_S = float(os.getenv("QUERY_TIMEOUT_S", "10"))

# A place with no hours information at all is shown as open
ASSUME_OPEN_WHEN_UNKNOWN = os.getenv("ASSUME_OPEN_WHEN_UNKNOWN", "true").lower() in ("1", "true", "yes")

# --- Categories queried on every scan ---
SCAN_CATEGORIES = [
    "restaurant",
    "cafe",
    "bakery",
    "gas_station",
    "pharmacy",
    "convenience_store",
    "grocery",
    "food_truck",
]

# Category -> Nearby Search params. Keyword searches get the category
# injected as the primary tag.
CATEGORY_QUERIES: dict[str, dict[str, str]] = {
    "restaurant":        {"type": "restaurant"},
    "cafe":              {"type": "cafe"},
    "bakery":            {"type": "bakery"},
    "gas_station":       {"type": "gas_station"},
    "pharmacy":          {"type": "pharmacy"},
    "convenience_store": {"type": "convenience_store"},
    "grocery":           {"type": "supermarket"},
    "food_truck":        {"keyword": "food truck"},
}

# --- Google Places adapter ---
SOURCE_RETRY_MAX = 3
SOURCE_HTTP_TIMEOUT_S = float(os.getenv("SOURCE_HTTP_TIMEOUT_S", "8"))
