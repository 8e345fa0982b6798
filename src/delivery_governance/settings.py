"""Settings for the delivery governance core.

Configuration is read from the environment with the DELIVERY_GOVERNANCE_
prefix and covers:
- Primary database (runs, steps, issues, lawbook versions)
- Audit Wall (separate database for the immutable audit trail)
- Remediation step execution bounds
- CI check polling bounds
- Bundled playbook and lawbook locations
- Logging
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = Path(__file__).parent


class Settings(BaseSettings):
    """Settings for delivery-governance-core.

    Environment variable prefix: DELIVERY_GOVERNANCE_
    """

    service_name: str = "delivery-governance-core"

    # -------------------------------------------------------------------------
    # Primary database
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="sqlite+aiosqlite:///./governance.db",
        description="SQLAlchemy async URL for runs, steps, issues and lawbook versions. "
        "Use postgresql+asyncpg:// in production.",
    )
    database_pool_size: int = Field(
        default=10,
        description="Connection pool size for the primary database (ignored for SQLite).",
    )

    # -------------------------------------------------------------------------
    # Audit Wall: separate database for the immutable audit trail
    # -------------------------------------------------------------------------

    audit_db_url: str = Field(
        default="sqlite+aiosqlite:///./governance-audit.db",
        description="SQLAlchemy async URL for the SEPARATE audit database. "
        "The DB user should have only INSERT and SELECT grants on gov_audit_events.",
    )
    audit_db_pool_size: int = Field(
        default=5,
        description="Connection pool size for the audit DB. Audit writes are append-only.",
    )
    audit_db_max_overflow: int = Field(
        default=2,
        description="Max overflow connections above audit_db_pool_size.",
    )
    audit_db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for an audit DB connection before raising.",
    )

    # -------------------------------------------------------------------------
    # Remediation execution
    # -------------------------------------------------------------------------

    step_timeout_seconds: float = Field(
        default=300.0,
        description="Hard upper bound for a single action backend call. "
        "A step exceeding it is recorded as FAILED with code STEP_TIMEOUT.",
    )
    playbook_dir: Path = Field(
        default=_PACKAGE_DIR / "remediation" / "playbooks",
        description="Directory of *.yaml playbook definitions loaded by PlaybookCatalog.",
    )

    # -------------------------------------------------------------------------
    # CI check polling (feeds the stop decision evaluator)
    # -------------------------------------------------------------------------

    check_poll_interval_seconds: float = Field(
        default=15.0,
        description="Fixed interval between CI check status polls.",
    )
    check_max_wait_seconds: float = Field(
        default=1800.0,
        description="Hard maximum wait for CI checks to reach a definitive state.",
    )

    # -------------------------------------------------------------------------
    # Lawbook
    # -------------------------------------------------------------------------

    lawbook_path: Path | None = Field(
        default=None,
        description="Optional YAML/JSON lawbook file loaded at startup. "
        "Without a lawbook every gated action is denied.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_json: bool = Field(default=False, description="Emit JSON log lines.")

    model_config = SettingsConfigDict(env_prefix="DELIVERY_GOVERNANCE_")
