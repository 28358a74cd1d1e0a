"""Service configuration and settings."""

import os
from functools import lru_cache
from pathlib import Path
import yaml
from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.getenv("AUTOASSIST_DATA_DIR", PROJECT_ROOT / "data"))
RECEIPTS_DIR = Path(os.getenv("RECEIPTS_DIR", DATA_DIR / "receipts"))
LOG_DIR = Path(os.getenv("LOG_DIR", PROJECT_ROOT / "logs"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/autoassist.db")

# Orders, estimates, offers
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "UAH")
INVOICE_REPLAY_WINDOW_MINUTES = int(os.getenv("INVOICE_REPLAY_WINDOW_MINUTES", "10"))
ESTIMATE_VALID_DAYS = int(os.getenv("ESTIMATE_VALID_DAYS", "7"))
OFFER_VALID_DAYS = int(os.getenv("OFFER_VALID_DAYS", "14"))

# LiqPay hosted checkout
LIQPAY_PUBLIC_KEY = os.getenv("LIQPAY_PUBLIC_KEY", "")
LIQPAY_PRIVATE_KEY = os.getenv("LIQPAY_PRIVATE_KEY", "")
LIQPAY_CHECKOUT_URL = os.getenv("LIQPAY_CHECKOUT_URL", "https://www.liqpay.ua/api/3/checkout")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")  # shared secret for normalized provider events
# local development only: accept normalized events without a secret
ALLOW_UNSIGNED_WEBHOOKS = os.getenv("ALLOW_UNSIGNED_WEBHOOKS", "false").lower() in ("1", "true", "yes")
API_BASE_URL = os.getenv("API_BASE_URL", "")

# On-chain payments (Polygon Amoy by default)
WEB3_RPC_URL = os.getenv("WEB3_RPC_URL", "https://rpc-amoy.polygon.technology")
WEB3_CHAIN_ID = int(os.getenv("WEB3_CHAIN_ID", "80002"))
WEB3_CONFIRMATIONS = int(os.getenv("WEB3_CONFIRMATIONS", "2"))
WEB3_ENFORCE_AMOUNT = os.getenv("WEB3_ENFORCE_AMOUNT", "false").lower() in ("1", "true", "yes")
WEB3_RPC_TIMEOUT = int(os.getenv("WEB3_RPC_TIMEOUT", "15"))
PLATFORM_RECEIVE_ADDRESS = os.getenv("PLATFORM_RECEIVE_ADDRESS", "")
USDC_TOKEN_ADDRESS = os.getenv("USDC_TOKEN_ADDRESS", "")
USDC_DECIMALS = int(os.getenv("USDC_DECIMALS", "6"))
NATIVE_DECIMALS = 18


def ensure_dirs() -> None:
    for d in [DATA_DIR, RECEIPTS_DIR, LOG_DIR]:
        d.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def load_pricing_config() -> dict:
    """Load tariffs, calc profiles, category templates and the insurance catalog from YAML."""
    config_path = Path(__file__).parent / "pricing.yaml"
    with open(config_path, encoding="utf-8") as f:
        return yaml.safe_load(f)
