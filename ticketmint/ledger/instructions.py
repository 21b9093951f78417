"""
Decoding of issuance-program instructions.

A mint is recognized by the program it is addressed to plus the 8-byte
Anchor discriminator at the start of its data, never by log text alone.
Account positions are program-defined and listed per instruction in
``MintLayout``.
"""
from __future__ import annotations
import hashlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..config import DEFAULT_ISSUANCE_PROGRAM_ID


CANDY_GUARD_PROGRAM_ID = "Guard1JwRhJkVH6XZhzoYxeBVQe872VH6QggF4BWmS9g"

MINT_LOG_MARKERS = frozenset({
    "Program log: Instruction: Mint",
    "Program log: Instruction: MintV2",
})


def anchor_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def has_mint_marker(logs: Iterable[str]) -> bool:
    return any(line.strip() in MINT_LOG_MARKERS for line in logs or ())


# ----------------------------
# Types
# ----------------------------
@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: Tuple[str, ...]
    data: bytes


@dataclass(frozen=True)
class MintArgs:
    asset_id: str
    owner: str
    machine_id: str
    instruction: str


@dataclass(frozen=True)
class Recognized:
    args: MintArgs


@dataclass(frozen=True)
class Unrecognized:
    reason: str


Decoded = Union[Recognized, Unrecognized]


@dataclass(frozen=True)
class MintLayout:
    name: str
    machine: int
    owner: int
    asset: int

    @property
    def width(self) -> int:
        return max(self.machine, self.owner, self.asset) + 1


def build_layouts(
    issuance_program_id: str = DEFAULT_ISSUANCE_PROGRAM_ID,
    guard_program_id: str = CANDY_GUARD_PROGRAM_ID,
) -> Dict[Tuple[str, bytes], MintLayout]:
    layouts = [
        # candy machine core: [candy_machine, authority_pda, mint_authority,
        #                      payer, nft_owner, nft_mint, ...]
        (issuance_program_id, MintLayout("mint_v2", machine=0, owner=4,
                                         asset=5)),
        # legacy core mint: the payer receives the nft
        (issuance_program_id, MintLayout("mint", machine=0, owner=3,
                                         asset=4)),
        # candy guard: [candy_guard, cm_program, candy_machine, cm_authority,
        #               payer, minter, nft_mint, ...]
        (guard_program_id, MintLayout("mint_v2", machine=2, owner=5,
                                      asset=6)),
    ]
    return {
        (program_id, anchor_discriminator(layout.name)): layout
        for program_id, layout in layouts
    }


# ----------------------------
# Decoder
# ----------------------------
class InstructionDecoder:
    def __init__(
        self, layouts: Optional[Dict[Tuple[str, bytes], MintLayout]] = None
    ) -> None:
        self.layouts = layouts if layouts is not None else build_layouts()
        self.program_ids = {program_id for program_id, _ in self.layouts}

    def decode(self, ix: Instruction) -> Decoded:
        if ix.program_id not in self.program_ids:
            return Unrecognized("not an issuance program")
        if len(ix.data) < 8:
            return Unrecognized("instruction data too short")
        layout = self.layouts.get((ix.program_id, bytes(ix.data[:8])))
        if layout is None:
            return Unrecognized("not a mint instruction")
        if len(ix.accounts) < layout.width:
            return Unrecognized(
                f"{layout.name}: expected {layout.width} accounts, "
                f"got {len(ix.accounts)}"
            )
        args = MintArgs(
            asset_id=ix.accounts[layout.asset],
            owner=ix.accounts[layout.owner],
            machine_id=ix.accounts[layout.machine],
            instruction=layout.name,
        )
        if not (args.asset_id and args.owner and args.machine_id):
            return Unrecognized(f"{layout.name}: incomplete account tuple")
        return Recognized(args)

    def find_mint(self, instructions: Sequence[Instruction]) -> Decoded:
        """First recognized mint in instruction order."""
        reasons: List[str] = []
        for ix in instructions:
            decoded = self.decode(ix)
            if isinstance(decoded, Recognized):
                return decoded
            if ix.program_id in self.program_ids:
                reasons.append(decoded.reason)
        if reasons:
            return Unrecognized("; ".join(reasons))
        return Unrecognized("no issuance program instruction")
