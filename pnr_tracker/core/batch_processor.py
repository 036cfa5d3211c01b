"""
Batch processor for reference-code status checks
Processes codes one at a time with a fixed delay between requests
Retries transient failures per code with capped exponential backoff
"""
import asyncio
import math
import random
import time
from typing import Callable, List, Optional, Tuple
import logging

from pnr_tracker.core.status_source import StatusSource
from pnr_tracker.models.schemas import (
    BatchOptions, BatchProcessingError, BatchProcessingResult, StatusSnapshot
)

logger = logging.getLogger(__name__)

# Substrings (lower-case) that mark an upstream error as transient
RETRYABLE_ERROR_SIGNATURES = (
    "timeout",
    "network",
    "connection",
    "econnreset",
    "enotfound",
    "etimedout",
    "http 5",
    "request failed",
)

MAX_BACKOFF_MS = 30000
MAX_JITTER_MS = 1000


def is_retryable_error(message: Optional[str]) -> bool:
    """True if the error message looks like a transient network/server failure"""
    if not message:
        return False
    lowered = message.lower()
    return any(signature in lowered for signature in RETRYABLE_ERROR_SIGNATURES)


def calculate_backoff_delay(attempt: int, base_delay_ms: int) -> float:
    """
    Exponential backoff with jitter, in milliseconds

    delay = min(base * 2^attempt + U(0, 1000), 30000)
    """
    exponential = base_delay_ms * (2 ** attempt)
    jitter = random.uniform(0, MAX_JITTER_MS)
    return min(exponential + jitter, MAX_BACKOFF_MS)


class BatchProcessor:
    """
    Sequential batch processor with per-item retry
    Features:
    - One upstream request at a time, request_delay_ms apart
    - Up to max_retries retries per code for transient errors
    - Parse/validation errors are returned immediately
    - Always one result per input code, in input order
    """

    def __init__(self, status_source: StatusSource, default_options: Optional[BatchOptions] = None):
        self.status_source = status_source
        self.default_options = default_options or BatchOptions()

    async def process(
        self,
        codes: List[str],
        options: Optional[BatchOptions] = None,
        progress_callback: Optional[Callable[[int, int, str], None]] = None
    ) -> BatchProcessingResult:
        """
        Check every code sequentially

        Args:
            codes: Reference codes to check
            options: Delay/retry options for this run
            progress_callback: Called with (current, total, code) before each code

        Returns:
            BatchProcessingResult with one snapshot per input code
        """
        opts = options or self.default_options
        start_time = time.monotonic()
        result = BatchProcessingResult(total_processed=len(codes))

        logger.info(
            f"Processing {len(codes)} codes sequentially "
            f"(delay {opts.request_delay_ms}ms, max retries {opts.max_retries})"
        )

        for index, code in enumerate(codes):
            if progress_callback:
                progress_callback(index + 1, len(codes), code)

            snapshot, retries = await self._process_with_retry(code, opts)
            result.results.append(snapshot)

            if snapshot.retired:
                result.retired_codes.append(code)

            if snapshot.error:
                result.total_failed += 1
                result.errors.append(BatchProcessingError(
                    reference_code=code,
                    error=snapshot.error,
                    retries=retries
                ))
            else:
                result.total_successful += 1

            if index < len(codes) - 1:
                await asyncio.sleep(opts.request_delay_ms / 1000)

        result.processing_time_ms = int((time.monotonic() - start_time) * 1000)

        logger.info(
            f"Batch complete: {result.total_successful}/{result.total_processed} successful, "
            f"{result.total_failed} failed, {len(result.retired_codes)} retired, "
            f"{result.processing_time_ms}ms"
        )
        return result

    async def _process_with_retry(self, code: str, opts: BatchOptions) -> Tuple[StatusSnapshot, int]:
        """
        Fetch one code, retrying transient failures

        Returns:
            (snapshot, retries used). Never raises.
        """
        last_error = "Max retries exceeded"

        for attempt in range(opts.max_retries + 1):
            try:
                snapshot = await self.status_source.fetch(code)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                if not is_retryable_error(last_error):
                    logger.warning(f"Terminal error for {code}: {last_error}")
                    return StatusSnapshot.failed(code, last_error), attempt
            else:
                if not snapshot.error or not is_retryable_error(snapshot.error):
                    return snapshot, attempt
                last_error = snapshot.error

            if attempt < opts.max_retries:
                delay_ms = calculate_backoff_delay(attempt, opts.retry_delay_ms)
                logger.info(
                    f"Retry {attempt + 1}/{opts.max_retries} for {code} in {delay_ms:.0f}ms ({last_error})"
                )
                await asyncio.sleep(delay_ms / 1000)

        logger.warning(f"{code} still failing after {opts.max_retries} retries: {last_error}")
        return StatusSnapshot.failed(code, last_error), opts.max_retries

    async def process_with_throttling(
        self,
        codes: List[str],
        requests_per_minute: int = 30,
        progress_callback: Optional[Callable[[int, int, str], None]] = None
    ) -> BatchProcessingResult:
        """Process codes at a fixed request rate"""
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")

        options = BatchOptions(
            request_delay_ms=math.ceil(60000 / requests_per_minute),
            max_retries=self.default_options.max_retries,
            retry_delay_ms=self.default_options.retry_delay_ms
        )
        return await self.process(codes, options, progress_callback)
