from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field
import tomllib
import os
import random


class PollingCfg(BaseModel):
    default_interval_ms: int = 37_000
    fast_interval_ms: int = 7_000
    fast_window_minutes: int = 30


class MatchingCfg(BaseModel):
    precise_window_ms: int = 10 * 60 * 1000
    coarse_window_ms: int = 14 * 24 * 3600 * 1000


class NotifyCfg(BaseModel):
    enabled: bool = False
    webhook_url: str = ""
    username: str = "Auction Tracker"
    ping_on_new_bid: bool = True
    ping_at_30m: bool = True
    update_interval_sec: int = Field(default=60, ge=15)
    closing_soon_cooldown_sec: int = 60

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.webhook_url)


class NetworkCfg(BaseModel):
    rotate_user_agents: bool = True
    use_proxies: bool = False
    proxy_file: str = "proxies.txt"
    timeout_seconds: float = 30.0


class StorageCfg(BaseModel):
    database: str = "data/lotwatch.sqlite"
    backup_dir: str = "data/backups"
    backup_retention_days: int = 30
    backup_interval_hours: int = 6
    history_view_limit: int = 50


class Settings(BaseModel):
    polling: PollingCfg = PollingCfg()
    matching: MatchingCfg = MatchingCfg()
    notify: NotifyCfg = NotifyCfg()
    network: NetworkCfg = NetworkCfg()
    storage: StorageCfg = StorageCfg()

    # ---- helpers -----------------------------------------------------
    _UA_POOL = [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_5) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    ]

    def random_headers(self) -> dict[str, str]:
        ua = random.choice(self._UA_POOL) if self.network.rotate_user_agents else self._UA_POOL[0]
        return {
            "User-Agent": ua,
            "Accept-Language": "nl-NL,nl;q=0.9,en;q=0.8",
        }

    def random_proxy(self) -> Optional[str]:
        if not self.network.use_proxies:
            return None
        lines = Path(self.network.proxy_file).read_text().splitlines()
        return random.choice(lines).strip()


def config_path() -> Path:
    return Path(os.getenv("LOTWATCH_CONFIG", "lotwatch.toml"))


def load_settings(path: Optional[Path] = None) -> Settings:
    cfg_path = path or config_path()
    raw = tomllib.loads(cfg_path.read_text()) if cfg_path.exists() else {}
    settings = Settings.model_validate(raw)
    webhook = os.getenv("DISCORD_WEBHOOK_URL", "").strip()
    if webhook and not settings.notify.webhook_url:
        settings.notify.webhook_url = webhook
    return settings
