from functools import lru_cache
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

CsvList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""
    database_statement_timeout_ms: int = Field(default=15000, ge=0)

    jwt_secret: str = Field(
        default="",
        validation_alias=AliasChoices("JWT_SECRET", "FLOWBILLS_JWT_SECRET"),
    )
    jwt_audience: str = Field(
        default="authenticated",
        validation_alias=AliasChoices("JWT_AUDIENCE"),
    )
    jwks_url: str = Field(
        default="",
        validation_alias=AliasChoices("JWKS_URL"),
    )

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: CsvList = Field(
        default_factory=lambda: [
            "bank_account",
            "tax_id",
            "email",
            "phone",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    # --- AI extraction ---
    ai_extract_provider: str = "mock"
    ai_extract_model: str = ""
    ai_vision_provider: str = "mock"
    ai_vision_model: str = ""
    ai_allowed_providers: CsvList = Field(default_factory=lambda: ["mock", "claude", "openai"])
    ai_allowed_models: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "claude": ["claude-sonnet-4-5", "claude-3-5-haiku-20241022"],
            "openai": ["gpt-4o", "gpt-4o-mini-2024-07-18"],
        }
    )
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    ai_timeout_seconds: float = 45.0
    ai_max_tokens: int = 4096
    ai_temperature: float = 0.0
    ai_max_text_chars: int = 60_000
    ai_debug_store_raw: bool = False
    enable_ai_overrides: bool = False

    max_document_bytes: int = 15 * 1024 * 1024

    # --- Budget / policy / approvals ---
    budget_warning_ratio: float = Field(default=0.10, ge=0.0, le=1.0)
    default_policy_types: CsvList = Field(default_factory=lambda: ["approval", "fraud"])
    default_fraud_risk_score: int = Field(default=50, ge=0, le=100)
    review_queue_priority: int = 3
    approval_enforce_level_order: bool = True
    ledger_post_on_final_approval: bool = True

    # --- Human-in-the-loop gate on auto-approval ---
    hil_routing_enabled: bool = True
    hil_auto_approve_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    hil_review_confidence: float = Field(default=0.60, ge=0.0, le=1.0)
    hil_high_value_amount: float = Field(default=10000.0, ge=0.0)

    duplicate_window_days: int = 7
    duplicate_amount_tolerance: float = 0.01

    cors_allow_origins: CsvList = Field(default_factory=list)
    cors_allow_methods: CsvList = Field(default_factory=lambda: [
        "GET",
        "POST",
        "OPTIONS",
    ])
    cors_allow_headers: CsvList = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        "ai_allowed_providers",
        "default_policy_types",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
