"""Chain client interfaces.

A swap touches two chains: the *lock* chain, where the initiator's funds sit
in a slotted HTLC, and the *settlement* chain, where resolvers lock their
counter-value in escrows. Either chain can play either role depending on the
swap direction, so concrete clients implement both interfaces.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from fusioncross.registry.models import SwapDirection


@dataclass(frozen=True)
class EscrowReceipt:
    """Settlement-chain escrow created by a resolver."""

    ref: str
    address: str


class LockChainClient(ABC):
    """Slotted HTLC on the lock chain."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Chain name."""
        raise NotImplementedError()

    @abstractmethod
    async def lock_funds(
        self,
        swap_id: str,
        recipient: str,
        hash_lock: str,
        timelock: int,
        amount: int,
        slots: Optional[int] = None,
    ) -> str:
        """Lock the initiator's funds under the hash lock.

        Args:
            swap_id: Contract key
            recipient: Counterparty address
            hash_lock: Hex sha256 of the secret
            timelock: Expiry (unix seconds)
            amount: Amount in minor units
            slots: Number of fill slots the amount is split into

        Returns:
            Lock transaction reference

        Raises:
            Expired: If the timelock already passed
            StateConflict: If the swap is already locked
        """
        raise NotImplementedError()

    @abstractmethod
    async def claim_slot(
        self,
        swap_id: str,
        slot_index: int,
        preimage: bytes,
        sender: Optional[str] = None,
        signer: Optional[str] = None,
    ) -> str:
        """Claim one slot with the revealed preimage.

        ``signer`` is the sender's signing credential on this chain.

        Returns:
            Claim transaction reference

        Raises:
            AlreadyClaimed: The slot was claimed before
            Expired: The timelock passed
            InvalidPreimage: The preimage does not match the hash lock
        """
        raise NotImplementedError()

    @abstractmethod
    async def refund(self, swap_id: str) -> str:
        """Refund unclaimed funds to the initiator.

        Raises:
            RefundNotAllowed: Before the timelock or if already refunded
        """
        raise NotImplementedError()


class SettlementChainClient(ABC):
    """Resolver escrows on the settlement chain."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Chain name."""
        raise NotImplementedError()

    @abstractmethod
    async def lock_escrow(
        self,
        recipient: str,
        hash_lock: str,
        timelock: int,
        amount: int,
        sender: Optional[str] = None,
        signer: Optional[str] = None,
    ) -> EscrowReceipt:
        """Lock a resolver's counter-value for the recipient."""
        raise NotImplementedError()

    @abstractmethod
    def subscribe_activity(
        self, escrow_address: str, cursor: Optional[str] = None
    ) -> AsyncIterator[bytes]:
        """Stream raw signature/witness bytes of transactions touching an escrow.

        Args:
            escrow_address: Escrow account to follow
            cursor: Resume point; None streams from the escrow's first transaction
        """
        raise NotImplementedError()

    @abstractmethod
    async def claim_escrow(self, escrow_ref: str, preimage: bytes) -> str:
        """Release an escrow to its recipient by presenting the preimage.

        Raises:
            AlreadyClaimed: The escrow was claimed before
            InvalidPreimage: The preimage does not match the hash lock
        """
        raise NotImplementedError()


class ChainClient(LockChainClient, SettlementChainClient):
    """A chain usable in either role."""

    async def close(self) -> None:
        """Release network resources."""
        return None


class ChainRouter:
    """Maps a swap direction to its lock and settlement chains.

    A_TO_B locks on chain A and settles on chain B; B_TO_A is the reverse.
    """

    def __init__(self, chain_a: ChainClient, chain_b: ChainClient):
        self.chain_a = chain_a
        self.chain_b = chain_b

    def lock_chain(self, direction: SwapDirection) -> ChainClient:
        return self.chain_a if SwapDirection(direction) == SwapDirection.A_TO_B else self.chain_b

    def settlement_chain(self, direction: SwapDirection) -> ChainClient:
        return self.chain_b if SwapDirection(direction) == SwapDirection.A_TO_B else self.chain_a

    def chains(self) -> list[ChainClient]:
        return [self.chain_a, self.chain_b]

    async def close(self) -> None:
        for chain in self.chains():
            await chain.close()
