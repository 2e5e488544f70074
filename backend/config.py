import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root explicitly (robust for different CWDs)
_ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=_ENV_PATH)


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# =========================
# REST DATA STORE
# =========================
STORE_BASE_URL = os.getenv("STORE_BASE_URL", "http://localhost:3001")
STORE_TIMEOUT = float(os.getenv("STORE_TIMEOUT", "10"))

# =========================
# ROUTING SERVICE
# =========================
ROUTING_PROVIDER = os.getenv("ROUTING_PROVIDER", "osrm").lower()  # osrm | mapbox
OSRM_BASE_URL = os.getenv("OSRM_BASE_URL", "https://router.project-osrm.org")
MAPBOX_BASE_URL = os.getenv("MAPBOX_BASE_URL", "https://api.mapbox.com")
MAPBOX_TOKEN = os.getenv("MAPBOX_TOKEN", "")
ROUTING_TIMEOUT = float(os.getenv("ROUTING_TIMEOUT", "10"))
ROUTE_ANIMATION_FRAMES = int(os.getenv("ROUTE_ANIMATION_FRAMES", "60"))

# =========================
# FLEET TRACKING
# =========================
FLEET_POLL_INTERVAL = float(os.getenv("FLEET_POLL_INTERVAL", "30"))  # seconds
FLEET_AUTO_REFRESH = _flag("FLEET_AUTO_REFRESH", "true")
GPS_UPDATE_INTERVAL = float(os.getenv("GPS_UPDATE_INTERVAL", "30"))  # seconds

# =========================
# SERVICE
# =========================
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if origin.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
