from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import tempfile
import tomllib
from typing import Any, Dict, List

import tomli_w


DEFAULT_CONFIG_PATH = Path("/etc/qwebif.toml")
CONFIG_PATH_ENV = "QWEBIF_CONFIG_PATH"


def _str_list(value: Any, default: List[str]) -> List[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


@dataclass
class RestoreConfig:
    command: str = "/scripts/restore_default_config"
    no_reboot_flag: str = "-nr"
    reset_ip_flag: str = "-ip"
    timeout_seconds: float = 120.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "no_reboot_flag": self.no_reboot_flag,
            "reset_ip_flag": self.reset_ip_flag,
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RestoreConfig":
        return cls(
            command=str(data.get("command", "/scripts/restore_default_config")),
            no_reboot_flag=str(data.get("no_reboot_flag", "-nr")),
            reset_ip_flag=str(data.get("reset_ip_flag", "-ip")),
            timeout_seconds=float(data.get("timeout_seconds", 120.0)),
        )


@dataclass
class DeviceConfig:
    mode_command: List[str] = field(default_factory=lambda: ["call_qcsapi", "get_mode", "wifi0"])
    reboot_command: List[str] = field(default_factory=lambda: ["reboot"])

    def to_dict(self) -> Dict[str, Any]:
        return {"mode_command": list(self.mode_command), "reboot_command": list(self.reboot_command)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceConfig":
        defaults = cls()
        return cls(
            mode_command=_str_list(data.get("mode_command"), defaults.mode_command),
            reboot_command=_str_list(data.get("reboot_command"), defaults.reboot_command),
        )


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 80
    secret_path: Path = Path("/etc/qwebif-web.secret")
    admins: List[str] = field(default_factory=lambda: ["admin", "root"])
    restore_privilege: str = "admin"
    pam_service: str | None = None
    login_path: str = "/login"
    confirmation_path: str = "/system_rebooted"
    session_max_age: int = 3600
    allow_non_root: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "secret_path": str(self.secret_path),
            "admins": list(self.admins),
            "restore_privilege": self.restore_privilege,
            "login_path": self.login_path,
            "confirmation_path": self.confirmation_path,
            "session_max_age": self.session_max_age,
            "allow_non_root": self.allow_non_root,
        }
        if self.pam_service:
            payload["pam_service"] = self.pam_service
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebConfig":
        defaults = cls()
        return cls(
            host=str(data.get("host", defaults.host)),
            port=int(data.get("port", defaults.port)),
            secret_path=Path(data.get("secret_path", defaults.secret_path)),
            admins=_str_list(data.get("admins"), defaults.admins),
            restore_privilege=str(data.get("restore_privilege", defaults.restore_privilege)),
            pam_service=str(data.get("pam_service")) if data.get("pam_service") else None,
            login_path=str(data.get("login_path", defaults.login_path)),
            confirmation_path=str(data.get("confirmation_path", defaults.confirmation_path)),
            session_max_age=int(data.get("session_max_age", defaults.session_max_age)),
            allow_non_root=bool(data.get("allow_non_root", False)),
        )


@dataclass
class Config:
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)
    web: WebConfig = field(default_factory=WebConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restore": self.restore.to_dict(),
            "device": self.device.to_dict(),
            "web": self.web.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        return cls(
            restore=RestoreConfig.from_dict(data.get("restore", {})),
            device=DeviceConfig.from_dict(data.get("device", {})),
            web=WebConfig.from_dict(data.get("web", {})),
        )


def config_path() -> Path:
    env_path = os.getenv(CONFIG_PATH_ENV)
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> Config:
    path = Path(path)
    if not path.exists():
        return Config()
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    return Config.from_dict(payload)


def _serialize_config(config: Config) -> str:
    return tomli_w.dumps(config.to_dict())


def save_config(config: Config, path: Path = DEFAULT_CONFIG_PATH) -> bool:
    path = Path(path)
    content = _serialize_config(config)
    if path.exists():
        existing = path.read_text(encoding="utf-8")
        if existing == content:
            return False
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8") as handle:
        handle.write(content)
        temp_name = handle.name
    Path(temp_name).replace(path)
    return True


def config_to_toml(config: Config) -> str:
    return _serialize_config(config)
