"""Credential resolution and EIP-1559 signing.

``Signer.sign`` has no side effects: the nonce and fee caps come in as
arguments, so a failed submission can be re-signed without touching the store.
"""

import logging
import os
import re
from dataclasses import dataclass

from eth_account import Account as EthAccount
from eth_account.signers.local import LocalAccount
from eth_utils import is_address, keccak, to_checksum_address, to_hex

from stressnet.constants import TRANSFER_GAS, Layer
from stressnet.errors import CredentialUnavailable, InvalidIntent
from stressnet.models import Account, FeeQuote, SignedTx, TransactionIntent

log = logging.getLogger("stressnet.signer")

EthAccount.enable_unaudited_hdwallet_features()

HD_PATH = "m/44'/60'/0'/0/{index}"
_HEX_RE = re.compile(r"^0x([0-9a-fA-F]{2})*$")


@dataclass(frozen=True)
class LayerParams:
    chain_id: int
    call_gas_limit: int = 100_000


class CredentialResolver:
    """Turn a credential reference into a signing key.

    hex:<private key>     literal key
    env:<VAR>             key read from the environment
    mnemonic:<index>      m/44'/60'/0'/0/<index> from the configured mnemonic
    name:<text>           keccak256(text), as the testnode derives named accounts
    """

    def __init__(self, mnemonic: str | None = None) -> None:
        self.mnemonic = mnemonic
        self._cache: dict[str, LocalAccount] = {}

    def resolve(self, ref: str) -> LocalAccount:
        if ref in self._cache:
            return self._cache[ref]
        scheme, sep, value = ref.partition(":")
        if not sep or not value:
            raise CredentialUnavailable(f"malformed credential reference {ref!r}")
        try:
            match scheme:
                case "hex":
                    acct = EthAccount.from_key(value)
                case "env":
                    key = os.getenv(value)
                    if not key:
                        raise CredentialUnavailable(f"environment variable {value} is not set")
                    acct = EthAccount.from_key(key)
                case "mnemonic":
                    if not self.mnemonic:
                        raise CredentialUnavailable("no mnemonic configured")
                    acct = EthAccount.from_mnemonic(self.mnemonic, account_path=HD_PATH.format(index=int(value)))
                case "name":
                    acct = EthAccount.from_key(keccak(text=value))
                case _:
                    raise CredentialUnavailable(f"unknown credential scheme {scheme!r}")
        except CredentialUnavailable:
            raise
        except (ValueError, TypeError) as e:
            # Never echo key material.
            raise CredentialUnavailable(f"cannot load credential ({scheme}): {e.__class__.__name__}") from e
        self._cache[ref] = acct
        return acct

    def address_of(self, ref: str) -> str:
        return self.resolve(ref).address

    def key_for(self, account: Account) -> LocalAccount:
        acct = self.resolve(account.credential_ref)
        if acct.address.lower() != account.address.lower():
            raise CredentialUnavailable(
                f"credential for {account.account_id} derives {acct.address}, expected {account.address}"
            )
        return acct


class Signer:
    def __init__(self, resolver: CredentialResolver, layers: dict[Layer, LayerParams]) -> None:
        self.resolver = resolver
        self.layers = layers

    def gas_limit(self, intent: TransactionIntent) -> int:
        if intent.gas_limit is not None:
            return intent.gas_limit
        if intent.payload and intent.payload != "0x":
            return self.layers[intent.layer].call_gas_limit
        return TRANSFER_GAS

    def validate(self, intent: TransactionIntent) -> None:
        if intent.layer not in self.layers:
            raise InvalidIntent(f"{intent.intent_id}: no chain parameters for layer {intent.layer}")
        if not isinstance(intent.value, int) or intent.value < 0:
            raise InvalidIntent(f"{intent.intent_id}: value must be a non-negative integer (wei), got {intent.value!r}")
        if not is_address(intent.recipient):
            raise InvalidIntent(f"{intent.intent_id}: malformed recipient {intent.recipient!r}")
        if intent.payload is not None and not _HEX_RE.match(intent.payload):
            raise InvalidIntent(f"{intent.intent_id}: payload must be 0x-prefixed hex")
        if intent.gas_limit is not None and intent.gas_limit < TRANSFER_GAS:
            raise InvalidIntent(f"{intent.intent_id}: gas limit {intent.gas_limit} below intrinsic {TRANSFER_GAS}")

    def sign(self, account: Account, intent: TransactionIntent, nonce: int, fees: FeeQuote) -> SignedTx:
        self.validate(intent)
        key = self.resolver.key_for(account)
        gas = self.gas_limit(intent)
        tx = {
            "type": 2,
            "chainId": self.layers[intent.layer].chain_id,
            "nonce": nonce,
            "to": to_checksum_address(intent.recipient),
            "value": intent.value,
            "gas": gas,
            "maxFeePerGas": fees.max_fee_per_gas,
            "maxPriorityFeePerGas": fees.max_priority_fee_per_gas,
            "data": intent.payload or "0x",
        }
        signed = key.sign_transaction(tx)
        return SignedTx(
            layer=intent.layer,
            sender=key.address,
            recipient=tx["to"],
            nonce=nonce,
            value=intent.value,
            gas_limit=gas,
            raw=to_hex(signed.raw_transaction),
            tx_hash=to_hex(signed.hash),
        )
