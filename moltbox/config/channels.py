"""
Messaging channel configuration.

Each channel is enabled only when its credential variables are present.
Channels disagree on where the DM policy lives:

- telegram stores it flat: ``dmPolicy`` / ``allowFrom``
- discord and slack nest it: ``dm.policy`` / ``dm.allowFrom``

See https://github.com/moltbot/moltbot/blob/v2026.1.24-1/src/config/zod-schema.providers-core.ts
"""

from collections.abc import Callable, Mapping
from typing import Any

from .document import ensure_object, split_ids
from .errors import AllowListRequiredError

DEFAULT_DM_POLICY = "pairing"
ALLOWLIST = "allowlist"
OPEN = "open"
WILDCARD = ["*"]


def resolve_dm_policy(
    channel: str,
    policy: str,
    allow_from_var: str,
    env: Mapping[str, str],
) -> tuple[str, list[str] | None]:
    """
    Resolve a DM policy and its allow-list.

    Returns (policy, allow_from); allow_from is None when the policy needs no
    list and none was supplied.

    Raises:
        AllowListRequiredError: policy is allowlist but no identifiers resolved
    """
    allow_from = split_ids(env.get(allow_from_var))
    if allow_from:
        return policy, allow_from
    if policy == ALLOWLIST:
        raise AllowListRequiredError(channel, allow_from_var)
    if policy == OPEN:
        # "open" still requires allowFrom: ["*"]
        return policy, list(WILDCARD)
    return policy, None


def apply_telegram(channels: dict[str, Any], env: Mapping[str, str]) -> None:
    token = env.get("TELEGRAM_BOT_TOKEN")
    if not token:
        return

    # An explicit user list implies the allowlist policy.
    explicit = env.get("OPENCLAW_TELEGRAM_ALLOWED_USERS")
    if explicit:
        policy, allow_from = resolve_dm_policy(
            "telegram", ALLOWLIST, "OPENCLAW_TELEGRAM_ALLOWED_USERS", env
        )
    else:
        policy, allow_from = resolve_dm_policy(
            "telegram",
            env.get("TELEGRAM_DM_POLICY") or DEFAULT_DM_POLICY,
            "TELEGRAM_DM_ALLOW_FROM",
            env,
        )

    telegram = ensure_object(channels, "telegram")
    telegram["botToken"] = token
    telegram["enabled"] = True
    telegram["dmPolicy"] = policy
    if allow_from is not None:
        telegram["allowFrom"] = allow_from


def _apply_nested_dm(
    settings: dict[str, Any],
    channel: str,
    policy: str,
    allow_from_var: str,
    env: Mapping[str, str],
) -> None:
    policy, allow_from = resolve_dm_policy(channel, policy, allow_from_var, env)
    dm = ensure_object(settings, "dm")
    dm["policy"] = policy
    if allow_from is not None:
        dm["allowFrom"] = allow_from


def apply_discord(channels: dict[str, Any], env: Mapping[str, str]) -> None:
    token = env.get("DISCORD_BOT_TOKEN")
    if not token:
        return

    policy = env.get("DISCORD_DM_POLICY") or DEFAULT_DM_POLICY
    # Resolve before touching the document so a bad policy writes nothing.
    resolve_dm_policy("discord", policy, "DISCORD_DM_ALLOW_FROM", env)

    discord = ensure_object(channels, "discord")
    discord["token"] = token
    discord["enabled"] = True
    _apply_nested_dm(discord, "discord", policy, "DISCORD_DM_ALLOW_FROM", env)


def apply_slack(channels: dict[str, Any], env: Mapping[str, str]) -> None:
    bot_token = env.get("SLACK_BOT_TOKEN")
    app_token = env.get("SLACK_APP_TOKEN")
    if not bot_token or not app_token:
        return

    policy = env.get("SLACK_DM_POLICY")
    if policy:
        resolve_dm_policy("slack", policy, "SLACK_DM_ALLOW_FROM", env)

    slack = ensure_object(channels, "slack")
    slack["botToken"] = bot_token
    slack["appToken"] = app_token
    slack["enabled"] = True
    if policy:
        _apply_nested_dm(slack, "slack", policy, "SLACK_DM_ALLOW_FROM", env)


CHANNEL_RESOLVERS: tuple[Callable[[dict[str, Any], Mapping[str, str]], None], ...] = (
    apply_telegram,
    apply_discord,
    apply_slack,
)
