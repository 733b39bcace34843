"""
Pydantic Models and Schemas
===========================

Core data models for gateway configuration, runtime statistics and HTTP responses.
All models include validation and type hints.
"""

from typing import Optional, Dict, Any, Tuple, Literal
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Enums
class FingerprintStrategy(str, Enum):
    """How module cache entries detect a changed source file."""
    MTIME = "mtime"
    HASH = "hash"


class StartMethod(str, Enum):
    """Process start methods usable for sandbox contexts."""
    SPAWN = "spawn"
    FORKSERVER = "forkserver"
    FORK = "fork"


# Top-level stdlib modules page code may import
DEFAULT_ALLOWED_IMPORTS: Tuple[str, ...] = (
    "collections",
    "dataclasses",
    "datetime",
    "decimal",
    "enum",
    "fractions",
    "functools",
    "html",
    "itertools",
    "json",
    "math",
    "operator",
    "re",
    "statistics",
    "string",
    "textwrap",
    "typing",
)


# Gateway Configuration
class GatewayOptions(BaseModel):
    """Immutable gateway construction options.

    Field names accept both snake_case and the camelCase aliases used by
    the original ``NewWithOptions`` contract. Unknown fields are ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    public_path: str = Field("/public", alias="publicPath", description="URL prefix for static assets")
    source_dir: Path = Field(Path("."), alias="sourceDir", description="Root directory for page modules")

    # Sandbox
    render_timeout: float = Field(
        5.0, gt=0, le=600, alias="renderTimeout", description="Per-render execution deadline in seconds"
    )
    pool_size: int = Field(4, ge=1, le=64, alias="poolSize", description="Concurrent sandbox contexts")
    max_renders_per_context: int = Field(
        500, ge=1, alias="maxRendersPerContext", description="Renders before a context is recycled"
    )
    start_method: StartMethod = Field(StartMethod.SPAWN, alias="startMethod")
    startup_timeout: float = Field(
        30.0, gt=0, alias="startupTimeout", description="Seconds a new context may take to become ready"
    )
    allowed_imports: Tuple[str, ...] = Field(
        DEFAULT_ALLOWED_IMPORTS, alias="allowedImports", description="Modules page code may import"
    )

    # Module loading
    fingerprint: FingerprintStrategy = Field(FingerprintStrategy.MTIME)
    module_extensions: Tuple[str, ...] = Field((".py",), alias="moduleExtensions")
    entry_point: str = Field("render", alias="entryPoint", description="Render callable name")

    # Output
    doctype: bool = Field(True, description="Prefix <!DOCTYPE html> when the root element is <html>")
    sort_prop_keys: bool = Field(
        True, alias="sortPropKeys", description="Key-sort props mappings for deterministic output"
    )

    @field_validator("public_path")
    @classmethod
    def validate_public_path(cls, v: str) -> str:
        """Validate the public URL prefix is rooted and free of traversal segments."""
        if not v.startswith("/"):
            raise ValueError("public_path must be rooted at '/'")
        if "\\" in v or any(ch.isspace() for ch in v):
            raise ValueError("public_path must not contain backslashes or whitespace")
        if any(segment in (".", "..") for segment in v.split("/")):
            raise ValueError("public_path must not contain '.' or '..' segments")
        return v

    @field_validator("module_extensions")
    @classmethod
    def validate_module_extensions(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Validate module extensions look like file suffixes."""
        if not v:
            raise ValueError("module_extensions must not be empty")
        for ext in v:
            if not ext.startswith(".") or len(ext) < 2 or "/" in ext:
                raise ValueError(f"Invalid module extension: {ext!r}")
        return v

    @field_validator("entry_point")
    @classmethod
    def validate_entry_point(cls, v: str) -> str:
        """Validate the entry point is a plain identifier."""
        if not v.isidentifier():
            raise ValueError(f"entry_point must be a valid identifier, got {v!r}")
        return v


# Runtime Statistics
class CacheStats(BaseModel):
    """Module cache counters."""
    entries: int = Field(0, ge=0, description="Cached compiled modules")
    hits: int = Field(0, ge=0, description="Lookups served from cache")
    misses: int = Field(0, ge=0, description="Lookups that required compilation")
    compilations: int = Field(0, ge=0, description="Successful compilations")
    invalidations: int = Field(0, ge=0, description="Entries dropped or replaced")


class PoolStats(BaseModel):
    """Sandbox pool counters."""
    size: int = Field(..., ge=1, description="Maximum concurrent contexts")
    live: int = Field(0, ge=0, description="Contexts currently alive")
    idle: int = Field(0, ge=0, description="Contexts waiting for work")
    busy: int = Field(0, ge=0, description="Contexts executing a render")
    spawned: int = Field(0, ge=0, description="Contexts started since creation")
    recycled: int = Field(0, ge=0, description="Contexts retired after reaching their render limit")
    killed: int = Field(0, ge=0, description="Contexts torn down after timeout, cancellation or crash")
    closed: bool = Field(False, description="Whether the pool has been shut down")


# Health Check Models
class HealthStatus(BaseModel):
    """Health check status."""
    status: Literal["healthy", "unhealthy", "degraded"] = Field(..., description="Overall status")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Check timestamp"
    )
    version: str = Field(..., description="Application version")

    # Component statuses
    source_dir: str = Field(..., description="Configured page module root")
    sandbox_pool: PoolStats = Field(..., description="Sandbox pool status")
    module_cache: CacheStats = Field(..., description="Module cache status")

    # Performance metrics
    memory_usage: Optional[float] = Field(None, description="Memory usage in MB")


# Error Models
class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error message")
    error_code: Optional[str] = Field(None, description="Error code")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Error timestamp"
    )
    request_id: Optional[str] = Field(None, description="Request identifier for tracking")
