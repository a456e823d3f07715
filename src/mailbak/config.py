"""Account, credential and settings storage via YAML files.

Layout under the config root ($MAILBAK_HOME, else ~/.config/mailbak):

    config.yaml                  settings, accounts, default account
    credentials/<account>.yaml   secrets, mode 0600
"""

import os
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path

import yaml

from .errors import InvalidArgumentError, NotFoundError
from .models import Account, GmailAccount, ImapAccount, JmapAccount, ProviderType, now
from .providers.base import ProviderSettings


MAILBAK_HOME_ENV = "MAILBAK_HOME"
DEFAULT_HOME = "~/.config/mailbak"
CONFIG_FILE = "config.yaml"
CREDENTIALS_DIR = "credentials"

# Stored in credentials/<id>.yaml only
SECRET_FIELDS = {"refresh_token"}

ACCOUNT_CLASSES: dict[ProviderType, type[Account]] = {
    ProviderType.IMAP: ImapAccount,
    ProviderType.GMAIL: GmailAccount,
    ProviderType.JMAP: JmapAccount,
}


@dataclass
class MailbakConfig:
    """Top-level configuration, passed explicitly to whoever needs it."""
    root: Path
    settings: ProviderSettings = field(default_factory=ProviderSettings)
    accounts: dict[str, Account] = field(default_factory=dict)
    default_account: str | None = None


def get_config_root(root: Path | None = None) -> Path:
    """Config root: explicit arg, then $MAILBAK_HOME, then ~/.config/mailbak."""
    if root:
        return Path(root)
    env_root = os.environ.get(MAILBAK_HOME_ENV)
    return Path(env_root or DEFAULT_HOME).expanduser()


def get_config_path(root: Path | None = None) -> Path:
    return get_config_root(root) / CONFIG_FILE


def new_account_id(type: ProviderType, root: Path | None = None) -> str:
    """e.g. `imap_1718000000000`; bumped past ids already in use."""
    existing = load_config(root).accounts
    millis = int(time.time() * 1000)
    while f"{type.value}_{millis}" in existing:
        millis += 1
    return f"{type.value}_{millis}"


def _parse_datetime(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def account_to_dict(account: Account) -> dict:
    data = {}
    for f in fields(account):
        if f.name == "id" or f.name in SECRET_FIELDS:
            continue
        value = getattr(account, f.name)
        if isinstance(value, ProviderType):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        data[f.name] = value
    return data


def account_from_dict(account_id: str, data: dict) -> Account:
    try:
        type = ProviderType(data.get("type", "imap"))
    except ValueError as e:
        raise InvalidArgumentError(f"Unknown account type for {account_id}: {data.get('type')}") from e
    cls = ACCOUNT_CLASSES[type]
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known and k not in ("id", "type")}
    kwargs["created_at"] = _parse_datetime(kwargs.get("created_at")) or now()
    kwargs["last_sync"] = _parse_datetime(kwargs.get("last_sync"))
    kwargs.setdefault("name", account_id)
    kwargs.setdefault("email", "")
    return cls(id=account_id, **kwargs)


def load_config(root: Path | None = None) -> MailbakConfig:
    """Load config.yaml; a missing file yields an empty config."""
    root = get_config_root(root)
    config_path = root / CONFIG_FILE
    if not config_path.exists():
        return MailbakConfig(root=root)

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    settings_data = data.get("settings") or {}
    settings = ProviderSettings(
        request_timeout=float(settings_data.get("request_timeout", ProviderSettings.request_timeout)),
        gmail_fetch_raw=bool(settings_data.get("gmail_fetch_raw", ProviderSettings.gmail_fetch_raw)),
        jmap_page_size=int(settings_data.get("jmap_page_size", ProviderSettings.jmap_page_size)),
    )
    accounts = {
        account_id: account_from_dict(account_id, acct_data or {})
        for account_id, acct_data in (data.get("accounts") or {}).items()
    }
    return MailbakConfig(
        root=root,
        settings=settings,
        accounts=accounts,
        default_account=data.get("default_account"),
    )


def save_config(config: MailbakConfig) -> None:
    config_path = config.root / CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "settings": {
            "request_timeout": config.settings.request_timeout,
            "gmail_fetch_raw": config.settings.gmail_fetch_raw,
            "jmap_page_size": config.settings.jmap_page_size,
        },
    }
    if config.default_account:
        data["default_account"] = config.default_account
    data["accounts"] = {
        account_id: account_to_dict(account)
        for account_id, account in config.accounts.items()
    }

    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_account(account_id: str, root: Path | None = None) -> Account | None:
    """Look up an account by id, falling back to a name or email match."""
    config = load_config(root)
    if account_id in config.accounts:
        return config.accounts[account_id]
    for account in config.accounts.values():
        if account_id in (account.name, account.email):
            return account
    return None


def save_account(account: Account, root: Path | None = None) -> None:
    config = load_config(root)
    config.accounts[account.id] = account
    if not config.default_account:
        config.default_account = account.id
    save_config(config)


def remove_account(account_id: str, root: Path | None = None) -> bool:
    """Remove an account and its credentials. Returns False if absent."""
    config = load_config(root)
    if account_id not in config.accounts:
        return False
    del config.accounts[account_id]
    if config.default_account == account_id:
        config.default_account = next(iter(config.accounts), None)
    save_config(config)
    delete_credentials(account_id, root)
    return True


def set_default_account(account_id: str, root: Path | None = None) -> None:
    config = load_config(root)
    if account_id not in config.accounts:
        raise NotFoundError(f"Account {account_id} not found")
    config.default_account = account_id
    save_config(config)


# --- Credentials ---


def get_credentials_path(account_id: str, root: Path | None = None) -> Path:
    safe_id = account_id.replace("/", "_")
    return get_config_root(root) / CREDENTIALS_DIR / f"{safe_id}.yaml"


def save_credentials(account_id: str, credentials: dict, root: Path | None = None) -> Path:
    """Write credentials readable by the owner only."""
    path = get_credentials_path(account_id, root)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        yaml.dump(credentials, f, default_flow_style=False, sort_keys=False)
    os.chmod(path, 0o600)
    return path


def load_credentials(account_id: str, root: Path | None = None) -> dict:
    path = get_credentials_path(account_id, root)
    if not path.exists():
        raise NotFoundError(f"No credentials stored for account {account_id}")
    with open(path) as f:
        return yaml.safe_load(f) or {}


def delete_credentials(account_id: str, root: Path | None = None) -> None:
    path = get_credentials_path(account_id, root)
    if path.exists():
        path.unlink()
