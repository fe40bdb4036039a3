"""
config.py - Cấu hình tập trung cho Attendance Credential Core
"""
import logging
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    # Issuance policy
    THRESHOLD: float = 0.80
    SESSIONS_REQUIRED: int = 10
    COURSE_ID: str = "course-1"

    # Identity
    DID_METHOD: str = "attend"
    ISSUER_KEY_TYPE: Literal["Ed25519", "secp256k1"] = "Ed25519"
    ISSUER_PRIVATE_KEY: Optional[str] = None  # Ethereum key, hex with 0x prefix

    # Toggles
    AUTO_ISSUE: bool = False  # Issue as soon as a subject becomes eligible

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="ATTENDANCE_", env_file=".env")

    @field_validator("THRESHOLD")
    @classmethod
    def _check_threshold(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError(f"THRESHOLD must be in (0, 1] (got {value!r})")
        return value

    @field_validator("SESSIONS_REQUIRED")
    @classmethod
    def _check_sessions(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"SESSIONS_REQUIRED must be positive (got {value!r})")
        return value


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the hosting process; defaults to ATTENDANCE_LOG_LEVEL"""
    level = level or CoreSettings().LOG_LEVEL
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    )
