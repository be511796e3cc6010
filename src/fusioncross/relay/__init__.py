"""Cross-chain relay: secret detection and lock-chain slot claims."""

from fusioncross.relay.relay import CrossChainRelay

__all__ = ["CrossChainRelay"]
