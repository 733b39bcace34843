"""
Gateway Errors
==============

Exception hierarchy shared by the loader, sandbox, serializer and gateway facade.
Every failure surfaced by the gateway is a ``GatewayError`` subclass carrying
enough context (module id, offending key path, diagnostic text) to be logged.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for all gateway failures."""

    error_code = "GATEWAY_ERROR"

    def __init__(self, message: str, module_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.module_id = module_id

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for log records."""
        data: Dict[str, Any] = {"error_code": self.error_code, "message": self.message}
        if self.module_id is not None:
            data["module"] = self.module_id
        return data


class ConfigurationError(GatewayError):
    """Raised at construction when gateway options are invalid."""

    error_code = "CONFIGURATION_ERROR"


class PageModuleNotFoundError(GatewayError):
    """Raised when a page path does not resolve to a module inside the source directory."""

    error_code = "MODULE_NOT_FOUND"

    def __init__(self, page_path: str, reason: str = "module not found") -> None:
        super().__init__(f"Cannot resolve page module '{page_path}': {reason}")
        self.page_path = page_path
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["page_path"] = self.page_path
        return data


class CompileError(GatewayError):
    """Raised when a module's source fails to parse or compile."""

    error_code = "COMPILE_ERROR"

    def __init__(
        self,
        module_id: str,
        diagnostic: str,
        lineno: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> None:
        location = f":{lineno}" if lineno is not None else ""
        if lineno is not None and offset is not None:
            location += f":{offset}"
        super().__init__(f"Failed to compile {module_id}{location}: {diagnostic}", module_id)
        self.diagnostic = diagnostic
        self.lineno = lineno
        self.offset = offset

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(diagnostic=self.diagnostic, lineno=self.lineno, offset=self.offset)
        return data


class RenderRuntimeError(GatewayError):
    """Raised when a module's render logic fails during execution or serialization."""

    error_code = "RUNTIME_ERROR"

    def __init__(self, module_id: Optional[str], message: str, details: Optional[str] = None) -> None:
        prefix = f"Render of {module_id} failed" if module_id else "Render failed"
        super().__init__(f"{prefix}: {message}", module_id)
        self.cause_message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.details:
            data["traceback"] = self.details
        return data


class RenderCancelledError(RenderRuntimeError):
    """Raised when the caller abandons a render before it completes."""

    error_code = "CANCELLED"


class RenderTimeoutError(GatewayError, TimeoutError):
    """Raised when execution exceeds the per-render deadline."""

    error_code = "TIMEOUT"

    def __init__(self, module_id: str, timeout: float) -> None:
        super().__init__(f"Render of {module_id} exceeded {timeout:g}s deadline", module_id)
        self.timeout = timeout

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["timeout"] = self.timeout
        return data


class UnsupportedPropertyError(GatewayError):
    """Raised when props contain a value outside the serializable value set."""

    error_code = "UNSUPPORTED_PROPERTY"

    def __init__(self, key_path: str, reason: str) -> None:
        super().__init__(f"Unsupported property at {key_path}: {reason}")
        self.key_path = key_path
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["key_path"] = self.key_path
        return data
