"""Chain node access."""

from tipbot.chain.base import ChainNode, ChainTransaction
from tipbot.chain.factory import get_chain_node, reset_chain_node

__all__ = ["ChainNode", "ChainTransaction", "get_chain_node", "reset_chain_node"]
