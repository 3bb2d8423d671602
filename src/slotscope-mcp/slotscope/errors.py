from typing import Any, Optional


class SlotscopeError(Exception):
    """Base class for errors raised by slotscope."""


class RpcError(SlotscopeError, ValueError):
    """A JSON-RPC error object returned by the node."""

    def __init__(self, code: Optional[int], message: str, data: Any = None) -> None:
        self.code = code
        self.message = message or ""
        self.data = data

        parts: list[str] = []
        if code is not None:
            parts.append(f"code {code}")
        if message:
            parts.append(str(message))
        if data:
            parts.append(str(data))
        detail = ": ".join(parts) if parts else "unknown error"
        super().__init__(f"RPC error: {detail}.")

    @property
    def is_method_not_found(self) -> bool:
        if self.code == -32601:
            return True
        text = self.message.lower()
        return any(
            marker in text
            for marker in (
                "method not found",
                "does not exist",
                "not available",
                "not supported",
                "unsupported method",
            )
        )

    @property
    def is_range_limit(self) -> bool:
        if self.code == -32005:
            return True
        text = f"{self.message} {self.data or ''}".lower()
        return any(
            marker in text
            for marker in (
                "block range",
                "range too large",
                "range is too large",
                "query returned more than",
                "too many results",
                "limit exceeded",
                "exceed maximum",
                "response size",
            )
        )


class InvalidAddress(SlotscopeError, ValueError):
    def __init__(self, value: Any) -> None:
        self.value = value
        super().__init__(
            f"Invalid address {value!r}. Expected 0x-prefixed 40 hex characters with a valid checksum."
        )


class UnsupportedKeyType(SlotscopeError, ValueError):
    def __init__(self, key_type: Any) -> None:
        self.key_type = key_type
        super().__init__(
            f"Unsupported mapping key type {key_type!r}. Supported: address, bytes32, uint<N>, int<N>."
        )


class BlockNotFound(SlotscopeError, LookupError):
    def __init__(self, tag: Any) -> None:
        self.tag = tag
        super().__init__(f"Block {tag!r} not found on this RPC endpoint.")


class UnsupportedDebugAPI(SlotscopeError):
    """debug_storageRangeAt is absent on the connected node."""


class LogRangeTooLarge(SlotscopeError):
    def __init__(self, from_block: int, to_block: int, detail: str = "") -> None:
        self.from_block = from_block
        self.to_block = to_block
        self.detail = detail
        message = f"Provider rejected log window {from_block}..{to_block}; lower the batch size."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
