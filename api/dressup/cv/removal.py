from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx
import numpy as np

from .. import config
from ..errors import DecodeError, RemovalFallbackExhausted, RemovalServiceError
from ..metrics import Timer, increment
from . import codec
from .codec import RasterBuffer

logger = logging.getLogger(__name__)

METHOD_REMOTE = "remote"
METHOD_LOCAL = "local"


@dataclass
class RemovalResult:
    """Outcome of one removal attempt, or of the whole fallback chain."""

    buffer: Optional[RasterBuffer]
    success: bool
    method_used: str
    timing_ms: float
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "method": self.method_used,
            "success": self.success,
            "timing_ms": self.timing_ms,
            "warnings": list(self.warnings),
            "error": self.error,
            "processed_dimensions": (
                {"width": self.buffer.width, "height": self.buffer.height}
                if self.buffer is not None
                else None
            ),
        }


class RemovalStrategy(Protocol):
    name: str

    async def attempt(self, buffer: RasterBuffer) -> RemovalResult:
        ...


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class LocalBackgroundRemover:
    """Brightness-threshold removal; crude, deterministic and always available.

    Any pixel whose mean RGB value exceeds the threshold is made fully
    transparent. Works for garments shot on white; anything light inside the
    subject is lost too, which is why the remote service is preferred.
    """

    name = METHOD_LOCAL
    NOTICE = (
        "Using basic local background removal (brightness threshold). "
        "Configure the remote removal service for better results."
    )

    def __init__(self, threshold: Optional[int] = None) -> None:
        self.threshold = config.LOCAL_BRIGHTNESS_THRESHOLD if threshold is None else threshold

    def apply(self, buffer: RasterBuffer) -> RasterBuffer:
        # mean > threshold, kept in integers: r + g + b > 3 * threshold
        channel_sum = buffer.rgb.astype(np.uint16).sum(axis=2)
        background = channel_sum > 3 * self.threshold
        alpha = np.where(background, 0, buffer.alpha).astype(np.uint8)
        return buffer.with_alpha(alpha)

    async def attempt(self, buffer: RasterBuffer) -> RemovalResult:
        start = time.perf_counter()
        try:
            result = self.apply(buffer)
        except Exception as exc:  # pylint: disable=broad-except
            message = f"Local background removal failed: {exc}"
            logger.warning(message)
            return RemovalResult(None, False, self.name, _elapsed_ms(start), error=message)
        return RemovalResult(result, True, self.name, _elapsed_ms(start), warnings=[self.NOTICE])


class RemoteBackgroundRemover:
    """Uploads the image to the external background-removal service."""

    name = METHOD_REMOTE

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_token: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = config.REMOVAL_SERVICE_URL if endpoint is None else endpoint
        self.api_token = config.REMOVAL_API_TOKEN if api_token is None else api_token
        self.timeout = config.REMOVAL_TIMEOUT_SECONDS if timeout is None else timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_token)

    async def remove(self, buffer: RasterBuffer) -> Tuple[RasterBuffer, List[str]]:
        """Return the service's result and any conversion warnings.

        Raises:
            RemovalServiceError: missing configuration, network failure,
                timeout, non-2xx response or an undecodable payload.
        """
        if not self.configured:
            raise RemovalServiceError(
                "Remote background removal is not configured (missing endpoint or API token).",
                stage="remove_background",
            )

        files = {"image": ("image.png", codec.encode(buffer, "PNG"), "image/png")}
        headers = {"Authorization": f"Bearer {self.api_token}"}
        try:
            response = await self._post(files=files, headers=headers)
        except httpx.TimeoutException as exc:
            raise RemovalServiceError(
                f"Remote background removal timed out after {self.timeout:g}s.",
                stage="remove_background",
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise RemovalServiceError(
                f"Remote background removal request failed: {exc}",
                stage="remove_background",
            ) from exc

        if not response.is_success:
            raise RemovalServiceError(self._error_message(response), stage="remove_background")

        warnings: List[str] = []
        try:
            payload, converted = codec.ensure_alpha_encoding(response.content)
            result = codec.decode(payload)
        except DecodeError as exc:
            raise RemovalServiceError(
                f"Remote service returned an unreadable image: {exc}",
                stage="remove_background",
            ) from exc
        if converted:
            content_type = response.headers.get("content-type", "unknown")
            warnings.append(
                f"Remote service returned a format without alpha ({content_type}); converted to PNG."
            )
        return result, warnings

    async def attempt(self, buffer: RasterBuffer) -> RemovalResult:
        start = time.perf_counter()
        try:
            result, warnings = await self.remove(buffer)
        except RemovalServiceError as exc:
            return RemovalResult(None, False, self.name, _elapsed_ms(start), error=exc.message)
        return RemovalResult(result, True, self.name, _elapsed_ms(start), warnings=warnings)

    async def _post(self, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.endpoint, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.endpoint, **kwargs)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"API error: {response.status_code}"


class BackgroundRemovalCoordinator:
    """Runs removal strategies in order until one succeeds.

    Warnings from every attempt are kept, so a remote failure stays visible
    even after the local fallback succeeds. When every strategy fails the
    failure is returned as a result; it is never raised.
    """

    def __init__(self, strategies: Optional[Sequence[RemovalStrategy]] = None) -> None:
        if strategies is None:
            strategies = [RemoteBackgroundRemover(), LocalBackgroundRemover()]
        self.strategies = list(strategies)
        if not self.strategies:
            raise ValueError("At least one background removal strategy is required.")

    async def remove(self, buffer: RasterBuffer, *, label: str = "image") -> RemovalResult:
        total = Timer("background_removal_seconds", f"label={label}")
        warnings: List[str] = []
        failures: List[str] = []
        last: Optional[RemovalResult] = None

        for strategy in self.strategies:
            with Timer("background_removal_attempt_seconds", f"method={strategy.name}") as timer:
                result = await self._safe_attempt(strategy, buffer)
            result.timing_ms = timer.elapsed_ms
            outcome = "ok" if result.success else "failed"
            increment("background_removal_total", f"method={result.method_used},outcome={outcome}")
            if result.success:
                result.warnings = warnings + result.warnings
                result.timing_ms = total.stop()
                logger.info("%s background removed via %s", label, result.method_used)
                return result
            logger.warning(
                "%s background removal via %s failed: %s", label, strategy.name, result.error
            )
            warnings.extend(result.warnings)
            warnings.append(f"{result.method_used} failed: {result.error}")
            failures.append(f"{result.method_used}: {result.error}")
            last = result

        exhausted = RemovalFallbackExhausted(
            f"All background removal strategies failed for {label} ({'; '.join(failures)}).",
            stage="remove_background",
        )
        return RemovalResult(
            None,
            False,
            last.method_used if last is not None else METHOD_LOCAL,
            total.stop(),
            warnings=warnings,
            error=exhausted.message,
        )

    @staticmethod
    async def _safe_attempt(strategy: RemovalStrategy, buffer: RasterBuffer) -> RemovalResult:
        try:
            return await strategy.attempt(buffer)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Removal strategy %s raised: %s", strategy.name, exc)
            return RemovalResult(None, False, strategy.name, 0.0, error=f"Unexpected error: {exc}")
