"""
Client for the private bundle relay (block engine) JSON-RPC endpoint.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import requests
from loguru import logger
from solders.pubkey import Pubkey

from volumebot.config import BUNDLE_MAX_CHECKS, BUNDLE_POLL_INTERVAL, RELAY_URL
from volumebot.errors import PollTimeoutError, RateLimitedError, RelayError
from volumebot.utils.polling import poll_until
from volumebot.utils.retry import RetryPolicy, retry_async

BUNDLES_ENDPOINT = "/api/v1/bundles"

TIP_ACCOUNTS = [
    Pubkey.from_string(address) for address in (
        "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
        "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
        "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
        "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
        "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
        "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
        "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
        "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
    )
]

# Statuses reported by getBundleStatuses that end polling
LANDED_STATUSES = ("confirmed", "finalized")
FAILED_STATUS = "failed"


def tip_account() -> Pubkey:
    """Account that receives relay tips."""
    return TIP_ACCOUNTS[0]


class BundleRelayClient:
    """Submits base64 transaction bundles to the relay and tracks their status."""

    def __init__(self, base_url: str = RELAY_URL, timeout: int = 10,
                 retry_policy: Optional[RetryPolicy] = None,
                 poll_interval: float = BUNDLE_POLL_INTERVAL,
                 max_checks: int = BUNDLE_MAX_CHECKS):
        """
        Initialize the relay client.

        Args:
            base_url: Relay base URL
            timeout: Request timeout in seconds
            retry_policy: Policy for rate-limited or failed requests
            poll_interval: Seconds between bundle status checks
            max_checks: Maximum number of bundle status checks
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval = poll_interval
        self.max_checks = max_checks
        self.session = requests.Session()
        self._request_id = 0

    def _post(self, method: str, params: List[Any]) -> Dict[str, Any]:
        """
        Post a JSON-RPC request to the bundles endpoint.

        Raises:
            RateLimitedError: On HTTP 429
            RelayError: On transport errors, non-200 responses or RPC errors
        """
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        url = f"{self.base_url}{BUNDLES_ENDPOINT}"
        start_time = time.time()

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise RelayError(f"{method} to {url} timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise RelayError(f"{method} to {url} failed: {str(e)}")

        elapsed = time.time() - start_time
        logger.debug(
            f"Relay {method} answered {response.status_code} in {elapsed:.2f}s",
            extra={"method": method, "status_code": response.status_code, "elapsed_time": elapsed}
        )

        if response.status_code == 429:
            try:
                retry_after = float(response.headers.get("Retry-After", 1))
            except ValueError:
                retry_after = 1.0
            raise RateLimitedError(f"Relay rate limited {method}", retry_after=retry_after)

        if response.status_code != 200:
            raise RelayError(f"Relay returned {response.status_code}: {response.text}")

        try:
            body = response.json()
        except ValueError as e:
            raise RelayError(f"Relay returned invalid JSON: {str(e)}")

        if body.get("error"):
            raise RelayError(f"Relay error for {method}: {body['error']}")
        return body

    async def _request(self, method: str, params: List[Any]) -> Dict[str, Any]:
        return await retry_async(
            lambda: asyncio.to_thread(self._post, method, params),
            self.retry_policy,
            retry_on=(RateLimitedError, RelayError),
            label=f"relay {method}",
        )

    async def send_bundle(self, encoded_transactions: List[str]) -> Optional[str]:
        """
        Submit base64 encoded transactions as one bundle.

        Args:
            encoded_transactions: Base64 serialized signed transactions

        Returns:
            Bundle id, or None if the relay did not accept the bundle
        """
        try:
            body = await self._request("sendBundle", [encoded_transactions, {"encoding": "base64"}])
        except (RateLimitedError, RelayError) as e:
            logger.warning(f"Bundle submission failed: {str(e)}")
            return None

        bundle_id = body.get("result")
        if not bundle_id:
            logger.warning("Relay accepted the request but returned no bundle id")
            return None

        logger.info(f"Bundle submitted: {bundle_id}", extra={"bundle_id": bundle_id})
        return bundle_id

    async def get_bundle_status(self, bundle_id: str) -> Optional[str]:
        """
        Current confirmation status of a bundle.

        Returns:
            processed, confirmed, finalized or failed; None if the relay does not know it yet
        """
        body = await self._request("getBundleStatuses", [[bundle_id]])
        entries = (body.get("result") or {}).get("value") or []
        for entry in entries:
            if entry and entry.get("bundle_id") == bundle_id:
                # Landed bundles report err as {"Ok": null}
                err = entry.get("err")
                if err and "Ok" not in err:
                    return FAILED_STATUS
                return entry.get("confirmation_status")
        return None

    async def wait_for_bundle(self, bundle_id: str) -> bool:
        """
        Poll a bundle until it lands, fails or the check budget runs out.

        Returns:
            True if the bundle reached confirmed or finalized
        """
        try:
            status = await poll_until(
                lambda: self.get_bundle_status(bundle_id),
                lambda s: s in LANDED_STATUSES or s == FAILED_STATUS,
                interval=self.poll_interval,
                timeout=None,
                label=f"bundle {bundle_id}",
                max_checks=self.max_checks,
            )
        except PollTimeoutError as e:
            logger.warning(f"Bundle {bundle_id} not confirmed, last status {e.last_value}")
            return False

        if status == FAILED_STATUS:
            logger.warning(f"Bundle {bundle_id} failed")
            return False

        logger.info(f"Bundle {bundle_id} {status}", extra={"bundle_id": bundle_id, "status": status})
        return True

    def close(self):
        self.session.close()
