import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from pagepay.db.session import DEFAULT_DATABASE_URL
from pagepay.errors import ConfigError

logger = logging.getLogger("config")

SANDBOX_GATEWAY_URL = "https://openapi-sandbox.alipay.com/gateway.do"
PRODUCTION_GATEWAY_URL = "https://openapi.alipay.com/gateway.do"


class GatewayConfig(BaseModel):
    app_id: str = Field(min_length=1)
    private_key: str = Field(min_length=1, repr=False)
    public_key: str = Field(min_length=1, repr=False)
    environment: Literal["sandbox", "production"] = "sandbox"
    gateway_url: Optional[str] = None
    notify_url: Optional[str] = None
    return_url: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL

    @model_validator(mode="after")
    def _resolve_gateway_url(self) -> "GatewayConfig":
        # A custom gateway is only honoured in sandbox; production always talks to the real one.
        if self.environment == "production":
            self.gateway_url = PRODUCTION_GATEWAY_URL
        elif not self.gateway_url:
            self.gateway_url = SANDBOX_GATEWAY_URL
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_sandbox(self) -> bool:
        return self.environment == "sandbox"

    def public_view(self) -> dict:
        return {
            "app_id": self.app_id,
            "gateway_url": self.gateway_url,
            "notify_url": self.notify_url,
            "return_url": self.return_url,
            "environment": self.environment,
            "is_sandbox": self.is_sandbox,
            "is_production": self.is_production,
        }

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, environment: Optional[str] = None) -> "GatewayConfig":
        """Build the configuration from process environment (and a .env file).

        Key material comes from ``ALIPAY_PRIVATE_KEY``/``ALIPAY_PUBLIC_KEY``
        or, when those are unset, from the files named by the ``*_PATH`` variables.
        """
        load_dotenv(env_file)
        problems = []

        app_id = os.getenv("ALIPAY_APP_ID")
        if not app_id:
            problems.append("missing ALIPAY_APP_ID")

        private_key = _read_key("private", "ALIPAY_PRIVATE_KEY", "ALIPAY_PRIVATE_KEY_PATH", problems)
        public_key = _read_key("public", "ALIPAY_PUBLIC_KEY", "ALIPAY_PUBLIC_KEY_PATH", problems)

        env = environment or os.getenv("PAYMENT_ENV", "sandbox")
        if env not in ("sandbox", "production"):
            problems.append(f"invalid PAYMENT_ENV {env!r}, must be 'sandbox' or 'production'")

        if problems:
            logger.error(f"[Config] invalid configuration: {'; '.join(problems)}")
            raise ConfigError(problems)

        try:
            return cls(
                app_id=app_id,
                private_key=private_key,
                public_key=public_key,
                environment=env,
                gateway_url=os.getenv("ALIPAY_GATEWAY_URL") or None,
                notify_url=os.getenv("NOTIFY_URL") or None,
                return_url=os.getenv("RETURN_URL") or None,
                database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
            )
        except PydanticValidationError as e:
            raise ConfigError([err["msg"] for err in e.errors()]) from e


def _read_key(kind: str, value_var: str, path_var: str, problems: list) -> Optional[str]:
    material = os.getenv(value_var)
    if material:
        return material
    path = os.getenv(path_var)
    if not path:
        problems.append(f"missing {kind} key: set {value_var} or {path_var}")
        return None
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        problems.append(f"{kind} key file not readable: {path} ({e.strerror})")
        return None
