# mlm_engine/config.py
"""
Configuration management for the compensation engine.
Loads from .env and an optional compensation plan JSON file.
"""
import os
import json
import logging
from typing import Any, Dict
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        workers = Config.get(Config.RUN_WORKERS)

        # Set dynamic value
        Config.set(Config.RUN_FAILURE_THRESHOLD, Decimal("0.25"))
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Commission runs
    RUN_WORKERS = "RUN_WORKERS"
    RUN_TIMEOUT_SECONDS = "RUN_TIMEOUT_SECONDS"
    RUN_FAILURE_THRESHOLD = "RUN_FAILURE_THRESHOLD"

    # Genealogy
    MAX_GENEALOGY_DEPTH = "MAX_GENEALOGY_DEPTH"
    MAX_TEAM_SIZE = "MAX_TEAM_SIZE"

    # Compliance
    COOLING_OFF_DAYS = "COOLING_OFF_DAYS"
    COMMISSION_HOLD_DAYS = "COMMISSION_HOLD_DAYS"

    # Payouts & caps
    PAYOUT_MIN_THRESHOLD = "PAYOUT_MIN_THRESHOLD"
    EARNINGS_CAP_MULTIPLIER = "EARNINGS_CAP_MULTIPLIER"

    # Scheduler
    SCHEDULER_TIMEZONE = "SCHEDULER_TIMEZONE"

    # Compensation plan (rates, ranks, protections, refunds)
    COMPENSATION_PLAN_FILE = "COMPENSATION_PLAN_FILE"
    COMPENSATION_PLAN = "COMPENSATION_PLAN"

    # ═══════════════════════════════════════════════════════════════════════
    # DEFAULTS
    # ═══════════════════════════════════════════════════════════════════════

    DEFAULTS: Dict[str, Any] = {
        DATABASE_URL: "sqlite:///mlm_engine.db",
        RUN_WORKERS: 4,
        RUN_TIMEOUT_SECONDS: 1800,
        RUN_FAILURE_THRESHOLD: "0.5",
        MAX_GENEALOGY_DEPTH: 5,
        MAX_TEAM_SIZE: 100000,
        COOLING_OFF_DAYS: 14,
        COMMISSION_HOLD_DAYS: 30,
        PAYOUT_MIN_THRESHOLD: "50",
        EARNINGS_CAP_MULTIPLIER: "1.5",
        SCHEDULER_TIMEZONE: "UTC",
        COMPENSATION_PLAN_FILE: None,
        COMPENSATION_PLAN: {},
    }

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = dict(DEFAULTS)
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                cls.DEFAULTS[cls.DATABASE_URL]
            )

            # Commission runs
            cls._config[cls.RUN_WORKERS] = int(os.getenv("RUN_WORKERS", "4"))
            cls._config[cls.RUN_TIMEOUT_SECONDS] = int(os.getenv("RUN_TIMEOUT_SECONDS", "1800"))
            cls._config[cls.RUN_FAILURE_THRESHOLD] = os.getenv("RUN_FAILURE_THRESHOLD", "0.5")

            # Genealogy
            cls._config[cls.MAX_GENEALOGY_DEPTH] = int(os.getenv("MAX_GENEALOGY_DEPTH", "5"))
            cls._config[cls.MAX_TEAM_SIZE] = int(os.getenv("MAX_TEAM_SIZE", "100000"))

            # Compliance
            cls._config[cls.COOLING_OFF_DAYS] = int(os.getenv("COOLING_OFF_DAYS", "14"))
            cls._config[cls.COMMISSION_HOLD_DAYS] = int(os.getenv("COMMISSION_HOLD_DAYS", "30"))

            # Payouts & caps
            cls._config[cls.PAYOUT_MIN_THRESHOLD] = os.getenv("PAYOUT_MIN_THRESHOLD", "50")
            cls._config[cls.EARNINGS_CAP_MULTIPLIER] = os.getenv("EARNINGS_CAP_MULTIPLIER", "1.5")

            # Scheduler
            cls._config[cls.SCHEDULER_TIMEZONE] = os.getenv("SCHEDULER_TIMEZONE", "UTC")

            # Compensation plan overrides (JSON file)
            plan_file = os.getenv("COMPENSATION_PLAN_FILE")
            cls._config[cls.COMPENSATION_PLAN_FILE] = plan_file
            if plan_file:
                cls._config[cls.COMPENSATION_PLAN] = cls._load_plan_file(plan_file)

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    def _load_plan_file(cls, path: str) -> Dict[str, Any]:
        """
        Read compensation plan overrides from a JSON file.

        Expected top-level keys (all optional):
            directRate, overrideRates, overrideMinRanks, leadershipRates,
            matchingRates, rankBonuses, rankRequirements, protectionLimits,
            refundPolicies, currencyQuantum
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read compensation plan file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Compensation plan file {path} must contain a JSON object")

        logger.info(f"Loaded compensation plan overrides from {path}: {sorted(data.keys())}")
        return data

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return cls._config.get(key, default)

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value (for dynamic updates).

        Args:
            key: Configuration key
            value: New value
            source: Source of the update (for logging)
        """
        cls._config[key] = value
        logger.debug(f"Config updated: {key} = {value} (source: {source})")

    @classmethod
    def reset(cls) -> None:
        """Restore built-in defaults (used by tests)."""
        cls._config = dict(cls.DEFAULTS)
        cls._initialized = False

    @classmethod
    def get_all(cls) -> Dict[str, Any]:
        """
        Get all configuration values.

        Returns:
            Copy of configuration dictionary
        """
        return cls._config.copy()
