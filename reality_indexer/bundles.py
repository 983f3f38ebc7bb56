from typing import Any, Dict, List, Sequence

from eth_utils import is_address, is_hex, to_checksum_address

from reality_indexer.contracts import module_tx_hash
from reality_indexer.errors import BundleMismatch, InvalidBundle
from reality_indexer.models import BundleTransaction, TxBundle

OPERATION_CALL = 0
OPERATION_DELEGATECALL = 1


def _normalize_transaction(index: int, raw: Dict[str, Any]) -> BundleTransaction:
    if not isinstance(raw, dict):
        raise InvalidBundle("expected an object with a 'to' field", index)
    to = raw.get("to")
    if not isinstance(to, str) or not is_address(to):
        raise InvalidBundle(f"invalid target address {to!r}", index)

    value = raw.get("value") or 0
    try:
        value = int(value, 0) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidBundle(f"invalid value {raw.get('value')!r}", index) from exc
    if value < 0:
        raise InvalidBundle("value must not be negative", index)

    data = raw.get("data") or "0x"
    if not isinstance(data, str) or not data.startswith("0x") or not is_hex(data) or len(data) % 2:
        raise InvalidBundle(f"invalid calldata {data!r}", index)

    operation = raw.get("operation") or 0
    if isinstance(operation, str) and operation.isdigit():
        operation = int(operation)
    if operation not in (OPERATION_CALL, OPERATION_DELEGATECALL):
        raise InvalidBundle(f"unsupported operation {operation!r}", index)

    return BundleTransaction(
        to=to_checksum_address(to),
        value=value,
        data=data.lower(),
        operation=int(operation),
        nonce=index,
    )


def import_bundle(
    proposal_id: str,
    transactions: Sequence[Dict[str, Any]],
    chain_id: int,
    module_address: str,
) -> TxBundle:
    """
    Normalize a candidate execution bundle and derive its commitment hashes.

    Sub-transaction ``i`` gets nonce ``i``; the hash is the EIP-712 digest the
    module checks in ``executeProposalWithIndex``.
    """
    if not proposal_id:
        raise InvalidBundle("proposal id is required")
    if not isinstance(transactions, (list, tuple)):
        raise InvalidBundle("transactions must be a list")

    normalized = [_normalize_transaction(i, tx) for i, tx in enumerate(transactions)]
    tx_hashes = [
        module_tx_hash(chain_id, module_address, tx.to, tx.value, tx.data, tx.operation, tx.nonce)
        for tx in normalized
    ]
    return TxBundle(proposal_id=proposal_id, transactions=normalized, tx_hashes=tx_hashes)


def verify_bundle(bundle: TxBundle, expected_hashes: Sequence[str]) -> List[str]:
    if len(bundle.tx_hashes) != len(expected_hashes):
        raise BundleMismatch(
            f"Hash count mismatch: bundle has {len(bundle.tx_hashes)}, "
            f"proposal has {len(expected_hashes)}",
            expected_count=len(expected_hashes),
            actual_count=len(bundle.tx_hashes),
        )
    for i, (actual, expected) in enumerate(zip(bundle.tx_hashes, expected_hashes)):
        if actual.lower() != expected.lower():
            raise BundleMismatch(
                f"Hash mismatch at index {i}: bundle={actual}, proposal={expected}",
                index=i,
            )
    return list(bundle.tx_hashes)
