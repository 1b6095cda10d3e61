import os
from dataclasses import dataclass, fields, replace
from logging import getLogger
from typing import Any

logger = getLogger(__name__)

DEFAULT_BASE_URL = 'https://api.openai.com/v1'
DEFAULT_TIMEOUT = 60.0


@dataclass(frozen=True)
class PassthroughConfig:
    enabled: bool = False
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    model: str | None = None
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> 'PassthroughConfig':
        api_key = os.getenv('OPENAI_API_KEY') or None
        return cls(
            enabled=api_key is not None,
            api_key=api_key,
            base_url=os.getenv('OPENAI_BASE_URL') or DEFAULT_BASE_URL,
            model=os.getenv('OPENAI_MODEL') or None,
            timeout=float(os.getenv('OPENAI_TIMEOUT') or DEFAULT_TIMEOUT),
        )

    def with_overrides(self, **overrides: Any) -> 'PassthroughConfig':
        """New config where every non-None override replaces the current value."""
        names = {f.name for f in fields(self)}
        unknown = set(overrides) - names
        if unknown:
            raise TypeError(f"Unknown passthrough config fields: {sorted(unknown)}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def endpoint(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


class PassthroughManager:
    _config: PassthroughConfig

    def __init__(self, config: PassthroughConfig | None = None):
        self._config = config if config is not None else PassthroughConfig.from_env()

    @property
    def config(self) -> PassthroughConfig:
        return self._config

    def has_api_key(self) -> bool:
        return bool(self._config.api_key)

    def is_enabled(self) -> bool:
        return self._config.enabled and self.has_api_key()

    def enable(self) -> None:
        if self.has_api_key():
            self._config = replace(self._config, enabled=True)

    def disable(self) -> None:
        self._config = replace(self._config, enabled=False)

    def toggle(self) -> bool:
        enabled = not self._config.enabled and self.has_api_key()
        self._config = replace(self._config, enabled=enabled)
        logger.info("Passthrough %s", "enabled" if self._config.enabled else "disabled")
        return self._config.enabled

    def set_api_key(self, api_key: str | None) -> None:
        api_key = (api_key or '').strip() or None
        self._config = replace(self._config, api_key=api_key, enabled=api_key is not None)

    def update(self, **overrides: Any) -> PassthroughConfig:
        self._config = self._config.with_overrides(**overrides)
        return self._config
