"""
Execution Dispatcher

Turns a committed token-weight composition into the vault contract's
fixed-arity ``updateRatios(hbar, wbtc, sauce, usdc, jam, headstart)``
call and invokes the external execution endpoint.

Failures surface as ``ExecutionError``; the engine records them as a
failed execution without blocking the governance commit.
"""

import itertools
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from ..constants import (
    CONNECTION_TIMEOUT,
    RATIO_FUNCTION_NAME,
    RATIO_GAS_LIMIT,
    RATIO_MAX,
    RATIO_MIN,
    RATIO_TOKEN_ORDER,
    TOKEN_WEIGHT_PREFIX,
)
from ..exceptions import ExecutionError
from ..logger import get_logger

logger = get_logger(__name__)


class RatioEndpoint(Protocol):
    """External endpoint accepting integer ratios in the fixed token order."""

    async def update_ratios(self, ratios: List[int]) -> str:
        """Submit the ratios and return the transaction id."""
        ...


@dataclass
class DispatchReceipt:
    """A successful dispatch."""
    tx_id: str
    ratios: Dict[str, int]


class ExecutionDispatcher:
    """
    Maps ``treasury.weights.*`` compositions onto the endpoint call.

    Values are floored to integers and clamped to [ratio_min, ratio_max];
    out-of-range values are clamped, not rejected.
    """

    def __init__(
        self,
        endpoint: Optional[RatioEndpoint] = None,
        prefix: str = TOKEN_WEIGHT_PREFIX,
        token_order: Sequence[str] = RATIO_TOKEN_ORDER,
        ratio_min: int = RATIO_MIN,
        ratio_max: int = RATIO_MAX,
    ):
        self.endpoint = endpoint
        self.prefix = prefix
        self.token_order = tuple(t.upper() for t in token_order)
        self.ratio_min = ratio_min
        self.ratio_max = ratio_max

    @property
    def configured(self) -> bool:
        return self.endpoint is not None

    def is_executable(self, path: str) -> bool:
        return path.startswith(self.prefix + ".")

    def _clamp(self, symbol: str, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ExecutionError(f"Ratio for {symbol} is not numeric: {value!r}")
        if not math.isfinite(value):
            raise ExecutionError(f"Ratio for {symbol} is not finite: {value!r}")
        return max(self.ratio_min, min(self.ratio_max, math.floor(value)))

    def build_ratios(self, composition: Mapping[str, Any]) -> Dict[str, int]:
        """
        Composition (full path → value) → ordered {symbol: ratio}.

        Tokens without a slot in the call are skipped. Raises
        ExecutionError for missing slots or non-numeric values.
        """
        slots: Dict[str, int] = {}
        for path, value in composition.items():
            if not self.is_executable(path):
                raise ExecutionError(f"{path} is not under {self.prefix}")
            symbol = path[len(self.prefix) + 1:].upper()
            if symbol not in self.token_order:
                logger.debug(f"Token {symbol} has no slot in {RATIO_FUNCTION_NAME}, skipped")
                continue
            slots[symbol] = self._clamp(symbol, value)

        missing = [t for t in self.token_order if t not in slots]
        if missing:
            raise ExecutionError(f"Composition is missing ratios for {', '.join(missing)}")
        return {t: slots[t] for t in self.token_order}

    async def dispatch(self, composition: Mapping[str, Any]) -> DispatchReceipt:
        if self.endpoint is None:
            raise ExecutionError("Execution endpoint is not configured")

        ratios = self.build_ratios(composition)
        logger.info(
            f"Dispatching {RATIO_FUNCTION_NAME}("
            + ", ".join(f"{t}={r}" for t, r in ratios.items()) + ")"
        )
        try:
            tx_id = await self.endpoint.update_ratios(list(ratios.values()))
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"{RATIO_FUNCTION_NAME} failed: {type(e).__name__}: {e}") from e

        if not tx_id:
            raise ExecutionError(f"{RATIO_FUNCTION_NAME} returned no transaction id")
        logger.info(f"{RATIO_FUNCTION_NAME} submitted, txId={tx_id}")
        return DispatchReceipt(tx_id=str(tx_id), ratios=ratios)


class JsonRpcRatioEndpoint:
    """
    JSON-RPC client for a contract-execution relay.

    Sends ``contract_execute`` with the contract id, function name, the
    ratio arguments and a gas limit. The relay answers with the
    transaction id in ``result`` (string or ``{"transactionId": ...}``).
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        url: str,
        contract_id: str,
        api_key: str,
        function_name: str = RATIO_FUNCTION_NAME,
        gas: int = RATIO_GAS_LIMIT,
        timeout: float = CONNECTION_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.contract_id = contract_id
        self.function_name = function_name
        self.gas = gas
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def update_ratios(self, ratios: List[int]) -> str:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "contract_execute",
            "params": {
                "contractId": self.contract_id,
                "function": self.function_name,
                "args": list(ratios),
                "gas": self.gas,
            },
        }
        try:
            response = await self._client.post(
                self.url,
                json=request,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise ExecutionError(f"Execution endpoint returned {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise ExecutionError(f"Execution endpoint unreachable: {e}") from e
        except ValueError as e:
            raise ExecutionError(f"Execution endpoint returned invalid JSON: {e}") from e

        if body.get("error"):
            error = body["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise ExecutionError(f"Execution endpoint error: {message}")

        result = body.get("result")
        if isinstance(result, dict):
            result = result.get("transactionId")
        if not result:
            raise ExecutionError("Execution endpoint returned no transaction id")
        return str(result)

    def __repr__(self) -> str:
        return f"<JsonRpcRatioEndpoint {self.url} contract={self.contract_id}>"
