"""
Address (JID) helpers.

Direct chats live on ``<user>@localhost``; groups on
``<group>@muclight.localhost``. A resource may follow a ``/``.
"""

DIRECT_DOMAIN = "localhost"
GROUP_DOMAIN = "muclight.localhost"

DIRECT_SUFFIX = f"@{DIRECT_DOMAIN}"
GROUP_SUFFIX = f"@{GROUP_DOMAIN}"


def is_group_address(address: str) -> bool:
    return GROUP_SUFFIX in address


def is_address(value: str) -> bool:
    # GROUP_SUFFIX ends with DIRECT_SUFFIX, so one check covers both
    return DIRECT_SUFFIX in value


def bare_address(address: str) -> str:
    """Strip the connection resource: ``u@localhost/web-1`` -> ``u@localhost``."""
    return address.split("/", 1)[0]


def resource_of(address: str) -> str:
    parts = address.split("/", 1)
    return parts[1] if len(parts) == 2 else ""


def user_id_of(address: str) -> str:
    local = address.split("@", 1)[0]
    return local or address


def format_direct_address(user_id: str) -> str:
    if "@" in user_id:
        return user_id
    return f"{user_id}{DIRECT_SUFFIX}"


def format_group_address(group_id: str) -> str:
    if GROUP_SUFFIX in group_id:
        return group_id
    return f"{group_id.split('@', 1)[0]}{GROUP_SUFFIX}"
