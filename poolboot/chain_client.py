"""
Pool Bootstrap - Chain Client

web3 client for the factory, pair, router, oracle and ERC-20 contracts.
Reads are plain view calls; writes are built, signed locally, broadcast and
awaited until the receipt arrives.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .abis import ERC20_ABI, FACTORY_ABI, ORACLE_ABI, PAIR_ABI, ROUTER_ABI, TRANSFER_TOPIC
from .amm_types import ZERO_ADDRESS, ErrorKind, normalize_address, same_address

log = logging.getLogger(__name__)


class ChainError(Exception):
    """Chain call failed before producing a usable answer."""
    def __init__(self, message: str, tx_id: Optional[str] = None):
        self.message = message
        self.tx_id = tx_id
        super().__init__(message)


class TransactionReverted(ChainError):
    """
    Call reverted.

    tx_id is None when the revert was caught during gas estimation, i.e.
    nothing was broadcast.
    """
    def __init__(self, reason: str, tx_id: Optional[str] = None):
        self.reason = reason
        where = f" (tx {tx_id})" if tx_id else " (not broadcast)"
        super().__init__(f"Reverted{where}: {reason}", tx_id)


class TransactionTimeout(ChainError):
    """Transaction was broadcast but no receipt arrived in time."""
    def __init__(self, tx_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"No receipt for {tx_id} after {timeout}s", tx_id)


def error_kind_for(error: ChainError) -> ErrorKind:
    if isinstance(error, TransactionTimeout):
        return ErrorKind.TRANSACTION_TIMEOUT
    if isinstance(error, TransactionReverted):
        return ErrorKind.TRANSACTION_REVERTED
    return ErrorKind.CHAIN_UNAVAILABLE


@dataclass
class TxOutcome:
    """Included transaction, logs normalized to hex strings."""
    tx_id: str
    status: int
    block_number: int = 0
    gas_used: int = 0
    logs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "status": self.status,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
        }


def minted_shares(outcome: TxOutcome, pair_address: str, recipient: str) -> int:
    """
    Sum pool shares minted to recipient in a transaction.

    A mint is a Transfer event emitted by the pair whose `from` is the zero
    address. Mints to other addresses (the permanently locked minimum
    liquidity on a first deposit) are ignored.
    """
    total = 0
    for entry in outcome.logs:
        if not same_address(entry.get("address", ZERO_ADDRESS), pair_address):
            continue
        topics = entry.get("topics", [])
        if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC.lower():
            continue
        # topics[1] = from, topics[2] = to (indexed, left padded to 32 bytes)
        sender = "0x" + topics[1][-40:]
        to = "0x" + topics[2][-40:]
        if int(sender, 16) != 0 or not same_address(to, recipient):
            continue
        data = entry.get("data") or "0x0"
        total += int(data, 16)
    return total


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


class ChainClient:
    """
    Read/write access to an EVM chain for one sending account.

    Usage:
        chain = ChainClient("https://rpc.example", private_key, chain_id=1)
        pair = chain.get_pair(factory, token_a, token_b)
        outcome = chain.approve(token, router, 10**18)

    Every write blocks until inclusion or `receipt_timeout`. The client keeps
    its own nonce counter so consecutive writes from the same account are
    strictly ordered without waiting on the node's pending pool. Every hash
    the node accepts is appended to `broadcast`, whatever happens after.
    """

    def __init__(self, rpc_url: str, private_key: Optional[str] = None, chain_id: Optional[int] = None,
                 receipt_timeout: float = 120, gas: Optional[Dict[str, Any]] = None,
                 w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self.account = Account.from_key(private_key) if private_key else None
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.gas = dict(gas or {})
        self._nonce: Optional[int] = None
        self.broadcast: List[str] = []
        self._contracts: Dict[Tuple[str, str], Any] = {}

    @property
    def address(self) -> str:
        """Sender address, the zero address for a read-only client."""
        return self.account.address if self.account else ZERO_ADDRESS

    def _contract(self, kind: str, address: str):
        key = (kind, address.lower())
        if key not in self._contracts:
            abi = {
                "erc20": ERC20_ABI,
                "factory": FACTORY_ABI,
                "pair": PAIR_ABI,
                "router": ROUTER_ABI,
                "oracle": ORACLE_ABI,
            }[kind]
            self._contracts[key] = self.w3.eth.contract(address=normalize_address(address), abi=abi)
        return self._contracts[key]

    def _read(self, fn) -> Any:
        try:
            return fn.call()
        except ContractLogicError as e:
            raise TransactionReverted(getattr(e, "message", None) or str(e))
        except requests.exceptions.RequestException as e:
            raise ChainError(f"Connection failed: {e}")
        except (Web3Exception, ValueError) as e:
            raise ChainError(f"Call failed: {e}")

    # ═══════════════════════════════════════════════════════════════════════
    # READS
    # ═══════════════════════════════════════════════════════════════════════

    def get_code(self, address: str) -> bytes:
        try:
            return bytes(self.w3.eth.get_code(normalize_address(address)))
        except requests.exceptions.RequestException as e:
            raise ChainError(f"Connection failed: {e}")
        except (Web3Exception, ValueError) as e:
            raise ChainError(f"get_code failed: {e}")

    def native_balance(self, owner: str) -> int:
        try:
            return self.w3.eth.get_balance(normalize_address(owner))
        except requests.exceptions.RequestException as e:
            raise ChainError(f"Connection failed: {e}")
        except (Web3Exception, ValueError) as e:
            raise ChainError(f"get_balance failed: {e}")

    def balance_of(self, token: str, owner: str) -> int:
        return self._read(self._contract("erc20", token).functions.balanceOf(normalize_address(owner)))

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self._read(self._contract("erc20", token).functions.allowance(
            normalize_address(owner), normalize_address(spender)))

    def get_pair(self, factory: str, token_a: str, token_b: str) -> str:
        return self._read(self._contract("factory", factory).functions.getPair(
            normalize_address(token_a), normalize_address(token_b)))

    def pair_tokens(self, pair: str) -> Tuple[str, str]:
        contract = self._contract("pair", pair)
        return self._read(contract.functions.token0()), self._read(contract.functions.token1())

    def get_reserves(self, pair: str) -> Tuple[int, int, int]:
        reserve0, reserve1, ts = self._read(self._contract("pair", pair).functions.getReserves())
        return reserve0, reserve1, ts

    def total_supply(self, pair: str) -> int:
        return self._read(self._contract("pair", pair).functions.totalSupply())

    def is_pair_supported(self, oracle: str, pair: str) -> bool:
        return bool(self._read(self._contract("oracle", oracle).functions.isPairSupported(
            normalize_address(pair))))

    def oracle_owner(self, oracle: str) -> str:
        return self._read(self._contract("oracle", oracle).functions.owner())

    # ═══════════════════════════════════════════════════════════════════════
    # WRITES
    # ═══════════════════════════════════════════════════════════════════════

    def approve(self, token: str, spender: str, amount: int) -> TxOutcome:
        return self._transact(self._contract("erc20", token).functions.approve(
            normalize_address(spender), amount))

    def create_pair(self, factory: str, token_a: str, token_b: str) -> TxOutcome:
        return self._transact(self._contract("factory", factory).functions.createPair(
            normalize_address(token_a), normalize_address(token_b)))

    def transfer(self, token: str, to: str, amount: int) -> TxOutcome:
        return self._transact(self._contract("erc20", token).functions.transfer(
            normalize_address(to), amount))

    def sync(self, pair: str) -> TxOutcome:
        return self._transact(self._contract("pair", pair).functions.sync())

    def mint(self, pair: str, to: str) -> TxOutcome:
        return self._transact(self._contract("pair", pair).functions.mint(normalize_address(to)))

    def add_liquidity(self, router: str, token_a: str, token_b: str,
                      amount_a_desired: int, amount_b_desired: int,
                      amount_a_min: int, amount_b_min: int,
                      to: str, deadline: int) -> TxOutcome:
        fn = self._contract("router", router).functions.addLiquidity(
            normalize_address(token_a), normalize_address(token_b),
            amount_a_desired, amount_b_desired, amount_a_min, amount_b_min,
            normalize_address(to), deadline)
        return self._transact(fn)

    def add_liquidity_native(self, router: str, token: str, amount_token_desired: int,
                             amount_token_min: int, amount_native_min: int,
                             to: str, deadline: int, value: int) -> TxOutcome:
        fn = self._contract("router", router).functions.addLiquidityETH(
            normalize_address(token), amount_token_desired, amount_token_min,
            amount_native_min, normalize_address(to), deadline)
        return self._transact(fn, value=value)

    def add_oracle_pair(self, oracle: str, pair: str, token0: str, token1: str) -> TxOutcome:
        return self._transact(self._contract("oracle", oracle).functions.addPair(
            normalize_address(pair), normalize_address(token0), normalize_address(token1)))

    def _next_nonce(self) -> int:
        if self._nonce is None:
            self._nonce = self.w3.eth.get_transaction_count(self.address, "pending")
        return self._nonce

    def _tx_params(self, value: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {"from": self.address, "value": value}
        if self.chain_id is not None:
            params["chainId"] = self.chain_id
        if self.gas.get("gas_limit"):
            params["gas"] = int(self.gas["gas_limit"])
        if self.gas.get("max_fee_gwei"):
            params["maxFeePerGas"] = self.w3.to_wei(self.gas["max_fee_gwei"], "gwei")
            params["maxPriorityFeePerGas"] = self.w3.to_wei(
                self.gas.get("max_priority_fee_gwei", 1), "gwei")
        else:
            params["gasPrice"] = self.w3.eth.gas_price
        return params

    def _transact(self, fn, value: int = 0) -> TxOutcome:
        """Build, sign, broadcast and await one contract call."""
        if self.account is None:
            raise ChainError(f"Cannot send {fn.fn_name}: client has no signing key")
        try:
            params = self._tx_params(value)
            params["nonce"] = self._next_nonce()
            # Estimates gas unless a limit is configured; a revert surfaces here
            tx = fn.build_transaction(params)
        except ContractLogicError as e:
            raise TransactionReverted(getattr(e, "message", None) or str(e))
        except requests.exceptions.RequestException as e:
            raise ChainError(f"Connection failed: {e}")
        except (Web3Exception, ValueError) as e:
            raise ChainError(f"Could not build transaction: {e}")

        signed = self.account.sign_transaction(tx)
        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except requests.exceptions.RequestException as e:
            self._nonce = None
            raise ChainError(f"Connection failed: {e}")
        except (Web3Exception, ValueError) as e:
            self._nonce = None
            raise ChainError(f"Broadcast rejected: {e}")
        self._nonce = tx["nonce"] + 1

        tx_id = _hex(tx_hash)
        self.broadcast.append(tx_id)
        log.info(f"TX sent: {tx_id} ({fn.fn_name})")

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted:
            raise TransactionTimeout(tx_id, self.receipt_timeout)
        except requests.exceptions.RequestException as e:
            raise ChainError(f"Connection lost waiting for {tx_id}: {e}", tx_id)
        except (Web3Exception, ValueError) as e:
            raise ChainError(f"Receipt lookup failed for {tx_id}: {e}", tx_id)

        outcome = self._outcome(tx_id, receipt)
        if outcome.status != 1:
            reason = self._revert_reason(tx_hash, receipt)
            log.error(f"TX reverted: {tx_id}: {reason}")
            raise TransactionReverted(reason, tx_id)
        log.info(f"TX confirmed: {tx_id} (block {outcome.block_number}, gas {outcome.gas_used})")
        return outcome

    @staticmethod
    def _outcome(tx_id: str, receipt) -> TxOutcome:
        logs = []
        for entry in receipt.get("logs", []):
            logs.append({
                "address": entry["address"],
                "topics": [_hex(t) for t in entry["topics"]],
                "data": _hex(entry["data"]),
            })
        return TxOutcome(
            tx_id=tx_id,
            status=int(receipt["status"]),
            block_number=int(receipt.get("blockNumber", 0)),
            gas_used=int(receipt.get("gasUsed", 0)),
            logs=logs,
        )

    def _revert_reason(self, tx_hash, receipt) -> str:
        """Replay a failed transaction at its block to recover the revert reason."""
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
            self.w3.eth.call({
                "from": tx["from"],
                "to": tx["to"],
                "data": tx["input"],
                "value": tx["value"],
            }, block_identifier=receipt["blockNumber"])
        except ContractLogicError as e:
            return getattr(e, "message", None) or str(e)
        except (Web3Exception, ValueError, requests.exceptions.RequestException) as e:
            log.debug(f"Revert replay failed: {e}")
        return "execution reverted"
