"""
ICE server configuration handed to clients through ``appConfig``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

LOG = logging.getLogger(__name__)

CONFIG_ENV = "SWITCHBOARD_CONFIG"

ENV_KEYS = {
    "stun_url": "STUN_URL",
    "turn_url": "TURN_URL",
    "turn_username": "TURN_USERNAME",
    "turn_password": "TURN_PASSWORD",
}


@dataclass(frozen=True)
class IceSettings:
    """
    STUN/TURN endpoints and credentials.

    Empty values are treated as unset and fall back to the defaults below.
    """

    stun_url: str = "stun:stun.l.google.com:19302"
    turn_url: str = "turn:127.0.0.1:3478"
    turn_username: str = "switchboard"
    turn_password: str = "switchboard"

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        *,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Optional[str],
    ) -> "IceSettings":
        """
        Resolve settings from overrides, then environment, then a YAML file.
        """

        env = os.environ if environ is None else environ
        settings = cls()

        config_path = path or env.get(CONFIG_ENV)
        if config_path:
            settings = settings.merge(_read_yaml(Path(config_path)))

        settings = settings.merge({key: env.get(name) for key, name in ENV_KEYS.items()})
        return settings.merge(overrides)

    def merge(self, values: Mapping[str, Any]) -> "IceSettings":
        known = {item.name for item in fields(self)}
        updates = {
            key: str(value).strip()
            for key, value in values.items()
            if key in known and value is not None and str(value).strip()
        }
        return replace(self, **updates) if updates else self

    @staticmethod
    def _expand(url: str) -> List[str]:
        return [f"{url}?transport=udp", f"{url}?transport=tcp"]

    def ice_servers(self, client_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Build the ``iceServers`` list for a client.

        Browsers expect ``credential``; native clients expect ``password``
        and an explicit empty login for STUN.
        """

        browser = (client_type or "").lower() == "browser"
        servers: List[Dict[str, Any]] = []
        if self.stun_url:
            if browser:
                servers.append({"urls": self._expand(self.stun_url)})
            else:
                servers.append({"username": "", "password": "", "urls": self._expand(self.stun_url)})
        if self.turn_url:
            if browser:
                servers.append(
                    {
                        "urls": self._expand(self.turn_url),
                        "username": self.turn_username,
                        "credential": self.turn_password,
                    }
                )
            else:
                servers.append(
                    {
                        "username": self.turn_username,
                        "password": self.turn_password,
                        "urls": self._expand(self.turn_url),
                    }
                )
        return servers


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Config file %s not found; using defaults", path)
        return {}
    if not isinstance(data, dict):
        LOG.warning("Config file %s does not contain a mapping; ignoring it", path)
        return {}
    ice = data.get("ice", data)
    return ice if isinstance(ice, dict) else {}


__all__ = ["CONFIG_ENV", "IceSettings"]
