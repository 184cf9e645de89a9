"""Session Router – Tenant-scoped Redis key factory.

All Redis keys MUST go through this module to ensure tenant isolation.

Key schema:
    t{tenant_id}:{domain}:{identifier}

Examples:
    tLOC123:echo:3EB0C767D26A1D2B8F90
"""


def redis_key(tenant_id: str, *parts: str) -> str:
    """Build a tenant-scoped Redis key.

    Args:
        tenant_id: Tenant (CRM location) id. Will be prefixed as 't{id}'.
        *parts:    Key path segments joined with ':'.

    Returns:
        Fully-qualified key string like 'tLOC123:echo:ABC'.
    """
    if not parts:
        raise ValueError("redis_key requires at least one path part")
    return f"t{tenant_id}:" + ":".join(str(p) for p in parts)


def echo_key(tenant_id: str, message_id: str) -> str:
    return redis_key(tenant_id, "echo", message_id)
