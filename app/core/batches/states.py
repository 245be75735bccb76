"""Persisted status strings for batches and collection transactions."""

VERIFICATION_PENDING = "pending"
VERIFICATION_VERIFIED = "verified"
VERIFICATION_REJECTED = "rejected"

MINT_PENDING = "PENDING_MINT"
MINT_MINTED = "MINTED"
MINT_FAILED = "FAILED_ON_CHAIN"
MINT_RETRYING = "RETRYING"

# A batch may be (re)claimed for minting only from these states.
MINT_CLAIMABLE = (None, MINT_FAILED)

TX_PENDING_BATCH = "PENDING_BATCH"
TX_CONFIRMED = "CONFIRMED"
TX_FAILED = "FAILED"
