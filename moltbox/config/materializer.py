"""
Gateway config materialisation.

``materialize(base, env)`` turns a restored (or default) config document and
the process environment into the document the gateway is started with. It
never mutates ``base`` and is idempotent: materialising its own output with
the same environment returns an equal document.

Steps, in order:
1. Ensure the required sections exist
2. Strip shapes the gateway's strict schema would reject
3. Pin owner-controlled gateway fields (port, mode, trusted proxies)
4. Gateway token / insecure control UI auth
5. Messaging channels
6. Exactly one model provider and the primary model
"""

import copy
from collections.abc import Mapping
from typing import Any

from ..log_config import get_logger
from ..settings import GATEWAY_PORT
from .channels import CHANNEL_RESOLVERS
from .document import ensure_object
from .providers import apply_provider, select_provider

GATEWAY_MODE = "local"
TRUSTED_PROXIES = ("10.1.0.0",)

# Keys superseded by newer schema shapes; restored backups may still carry them.
DEPRECATED_CHANNEL_KEYS = (
    ("telegram", "dm"),
    ("discord", "dmPolicy"),
)

log = get_logger("config", service="sandbox")


def _ensure_sections(config: dict[str, Any]) -> None:
    agents = ensure_object(config, "agents")
    defaults = ensure_object(agents, "defaults")
    ensure_object(defaults, "model")
    ensure_object(ensure_object(config, "models"), "providers")
    ensure_object(config, "gateway")
    ensure_object(config, "channels")


def _strip_obsolete(config: dict[str, Any]) -> None:
    providers = config["models"]["providers"]
    anthropic = providers.get("anthropic")
    if isinstance(anthropic, dict):
        # Older versions wrote model entries without the required name field
        models = anthropic.get("models") or []
        if not isinstance(models, list):
            log.info("config.strip_provider", provider="anthropic", reason="models_not_list")
            del providers["anthropic"]
        elif any(not isinstance(m, dict) or not m.get("name") for m in models):
            log.info("config.strip_provider", provider="anthropic", reason="model_missing_name")
            del providers["anthropic"]

    channels = config["channels"]
    for channel, key in DEPRECATED_CHANNEL_KEYS:
        settings = channels.get(channel)
        if isinstance(settings, dict) and key in settings:
            log.info("config.strip_channel_key", channel=channel, key=key)
            del settings[key]


def _apply_gateway(config: dict[str, Any], env: Mapping[str, str]) -> None:
    gateway = config["gateway"]
    gateway["port"] = GATEWAY_PORT
    gateway["mode"] = GATEWAY_MODE
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)

    token = env.get("OPENCLAW_GATEWAY_TOKEN")
    if token:
        ensure_object(gateway, "auth")["token"] = token

    if env.get("OPENCLAW_DEV_MODE") == "true":
        ensure_object(gateway, "controlUi")["allowInsecureAuth"] = True


def materialize(base: Mapping[str, Any] | None, env: Mapping[str, str]) -> dict[str, Any]:
    """
    Build the final gateway config from a base document and the environment.

    Raises:
        ConfigMaterializationError: the environment requests an unusable config
        CatalogInvariantError: the primary model is not in the selected catalog
    """
    config: dict[str, Any] = copy.deepcopy(dict(base)) if base else {}

    _ensure_sections(config)
    _strip_obsolete(config)
    _apply_gateway(config, env)

    for apply_channel in CHANNEL_RESOLVERS:
        apply_channel(config["channels"], env)

    selection = select_provider(env)
    apply_provider(config, selection)

    log.debug(
        "config.materialized",
        provider=selection.catalog.provider,
        primary=config["agents"]["defaults"]["model"]["primary"],
        channels=sorted(k for k, v in config["channels"].items() if isinstance(v, dict)),
    )
    return config
