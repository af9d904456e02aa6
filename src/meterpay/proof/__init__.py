"""Consumption proofs: claim signing, signer recovery, the proof ledger."""

from meterpay.proof.ledger import ProofLedger
from meterpay.proof.signing import claim_digest, recover_signer, sign_claim

__all__ = ["ProofLedger", "claim_digest", "recover_signer", "sign_claim"]
