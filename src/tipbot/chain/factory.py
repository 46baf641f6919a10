"""Factory for the configured chain node."""

from typing import Optional

from tipbot.chain.base import ChainNode
from tipbot.chain.dryrun import DryRunNode
from tipbot.chain.lbrycrd import LbrycrdNode
from tipbot.config import Settings, get_settings

# Singleton instance
_node_instance: Optional[ChainNode] = None


def get_chain_node(settings: Optional[Settings] = None) -> ChainNode:
    """Get the configured chain node.

    DRY_RUN=true (default) gives a simulated node; otherwise the lbrycrd
    JSON-RPC endpoint from LBRYCRD_RPC_URL is used.
    """
    global _node_instance

    if _node_instance is not None:
        return _node_instance

    settings = settings or get_settings()
    if settings.dry_run:
        _node_instance = DryRunNode()
    else:
        _node_instance = LbrycrdNode(settings.lbrycrd_rpc_url, timeout=settings.http_timeout)

    return _node_instance


def reset_chain_node() -> None:
    """Reset node instance (useful for testing)."""
    global _node_instance
    _node_instance = None
