"""
Marketplace configuration for Galerie.

Defines network, fee, validity-window and off-chain store parameters.
Values come from defaults, an optional dotenv file, then GALERIE_*
environment variables.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

TESTNET_PASSPHRASE = "Test SDF Network ; September 2015"
PUBLIC_PASSPHRASE = "Public Global Stellar Network ; September 2015"


@dataclass
class MarketConfig:
    """Marketplace-wide configuration parameters"""

    # Network
    network_passphrase: str = TESTNET_PASSPHRASE
    horizon_url: str = "https://horizon-testnet.stellar.org"
    native_code: str = "XLM"

    # Fixed-price purchases pay into this account
    escrow_account: Optional[str] = None

    # Transaction parameters
    base_fee: int = 100  # Per operation, in stroops
    tx_timeout: int = 180  # Validity window in seconds
    submit_timeout: Optional[float] = 60.0  # Passed to the signing capability
    max_rebuilds: int = 1  # Rebuilds after a sequence conflict

    # Native balance kept free above any spend (fees, trustline reserve)
    reserve_margin: Decimal = Decimal("1")

    # Off-chain records
    app_tag: str = "Galerie"

    # Paths
    data_dir: Path = Path("data")


def _env(name: str) -> Optional[str]:
    value = os.environ.get(f"GALERIE_{name}")
    return value if value not in (None, "") else None


def load_config(env_file: Optional[str] = None) -> MarketConfig:
    """
    Load configuration from environment (and optional dotenv file).

    Recognized variables: GALERIE_NETWORK (TESTNET/PUBLIC),
    GALERIE_HORIZON_URL, GALERIE_NATIVE_CODE, GALERIE_ESCROW_ACCOUNT,
    GALERIE_BASE_FEE, GALERIE_TX_TIMEOUT, GALERIE_SUBMIT_TIMEOUT,
    GALERIE_MAX_REBUILDS, GALERIE_RESERVE_MARGIN, GALERIE_APP_TAG,
    GALERIE_DATA_DIR.

    Args:
        env_file: Optional path to a dotenv file

    Returns:
        MarketConfig instance
    """
    load_dotenv(env_file)

    config = MarketConfig()

    network = _env("NETWORK")
    if network and network.upper() == "PUBLIC":
        config.network_passphrase = PUBLIC_PASSPHRASE
        config.horizon_url = "https://horizon.stellar.org"

    if _env("HORIZON_URL"):
        config.horizon_url = _env("HORIZON_URL")
    if _env("NATIVE_CODE"):
        config.native_code = _env("NATIVE_CODE").upper()
    if _env("ESCROW_ACCOUNT"):
        config.escrow_account = _env("ESCROW_ACCOUNT")
    if _env("BASE_FEE"):
        config.base_fee = int(_env("BASE_FEE"))
    if _env("TX_TIMEOUT"):
        config.tx_timeout = int(_env("TX_TIMEOUT"))
    if _env("SUBMIT_TIMEOUT"):
        config.submit_timeout = float(_env("SUBMIT_TIMEOUT"))
    if _env("MAX_REBUILDS"):
        config.max_rebuilds = int(_env("MAX_REBUILDS"))
    if _env("RESERVE_MARGIN"):
        config.reserve_margin = Decimal(_env("RESERVE_MARGIN"))
    if _env("APP_TAG"):
        config.app_tag = _env("APP_TAG")
    if _env("DATA_DIR"):
        config.data_dir = Path(_env("DATA_DIR")).expanduser()

    return config
