"""Claim signing and signer recovery.

A host authenticates a consumption claim by signing the claim digest
with its account key (EIP-191 personal-sign). The digest binds the
off-chain content reference, the host, the cumulative units claimed and
the session:

    keccak256(abi.encodePacked(string content_ref, address host,
                               uint256 claimed_units, uint256 session_id))

Binding the session id and host prevents a signature from being replayed
onto another session or attributed to another host.
"""

from __future__ import annotations

from typing import Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from web3 import Web3

from meterpay.errors import AuthorizationError, ValidationError

UINT256_MAX = 2**256 - 1

SignatureLike = Union[bytes, str]


def claim_digest(content_ref: str, host: str, claimed_units: int, session_id: int) -> bytes:
    """Compute the 32-byte digest a host signs for a claim."""
    if not 0 <= claimed_units <= UINT256_MAX or not 0 <= session_id <= UINT256_MAX:
        raise ValidationError("Claim values must fit in uint256", reason="invalid_units")
    return bytes(
        Web3.solidity_keccak(
            ["string", "address", "uint256", "uint256"],
            [content_ref, host, claimed_units, session_id],
        )
    )


def sign_claim(
    private_key: str,
    content_ref: str,
    host: str,
    claimed_units: int,
    session_id: int,
) -> bytes:
    """Sign a claim as ``host``. Used by host nodes and in tests."""
    digest = claim_digest(content_ref, host, claimed_units, session_id)
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=private_key)
    return bytes(signed.signature)


def recover_signer(digest: bytes, signature: SignatureLike) -> str:
    """Recover the checksummed address that signed ``digest``.

    Raises AuthorizationError if the signature is malformed.
    """
    try:
        raw = Web3.to_bytes(hexstr=signature) if isinstance(signature, str) else bytes(signature)
    except (ValueError, TypeError) as e:
        raise AuthorizationError(f"Undecodable claim signature: {e}", reason="bad_signature") from e
    if len(raw) != 65:
        raise AuthorizationError(
            f"Claim signature must be 65 bytes, got {len(raw)}", reason="bad_signature",
        )
    try:
        return Account.recover_message(encode_defunct(primitive=digest), signature=raw)
    except (BadSignature, KeyValidationError, ValueError, TypeError) as e:
        raise AuthorizationError(
            f"Unrecoverable claim signature: {e}", reason="bad_signature",
        ) from e
