"""
ShieldRoute - Remote Oracle Client

Submits decryption batches to an out-of-process oracle over HTTPS. The
oracle answers with a correlation id and later delivers its result to
``POST /oracle/callback``; proofs are checked locally with the oracle's
Ed25519 public key (see Ed25519ProofVerifier).

Environment Variables:
    SHIELDROUTE_ORACLE_URL=https://oracle.example
    SHIELDROUTE_ORACLE_PUBLIC_KEY=<base64 Ed25519 public key>
    SHIELDROUTE_CALLBACK_URL=https://shieldroute.example/oracle/callback
"""

import logging
import os
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from compute_engine import CiphertextHandle
from decryption_oracle import Ed25519ProofVerifier
from route_exceptions import OracleUnavailable

logger = logging.getLogger(__name__)

# Timeouts (seconds)
DEFAULT_TIMEOUT = 30
CONNECT_TIMEOUT = 10

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF_FACTOR = 1

SUBMIT_PATH = "/decrypt"


class HttpOracleSubmitter:
    """
    Callable that posts a batch of handles to the oracle.

    Usage:
        submit = HttpOracleSubmitter("https://oracle.example", callback_url)
        correlation_id = submit([distance, cost])
    """

    def __init__(
        self,
        endpoint: str,
        callback_url: str,
        timeout: int = DEFAULT_TIMEOUT,
        verify_ssl: bool = True,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.callback_url = callback_url
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.session = self._setup_session()

    def _setup_session(self) -> requests.Session:
        session = requests.Session()
        # Only connection setup is retried; a batch the oracle may have received is never resent
        retry_strategy = Retry(
            total=MAX_RETRIES,
            connect=MAX_RETRIES,
            read=0,
            status=0,
            other=0,
            backoff_factor=RETRY_BACKOFF_FACTOR,
            allowed_methods=frozenset(),
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
        return session

    def __call__(self, handles: list[CiphertextHandle]) -> int:
        """
        Submit handles for decryption.

        Returns:
            The oracle's correlation id

        Raises:
            OracleUnavailable: If the oracle cannot be reached or answers without an id
        """
        body: dict[str, Any] = {
            "handles": [h.to_dict() for h in handles],
            "callback_url": self.callback_url,
        }
        try:
            response = self.session.post(
                f"{self.endpoint}{SUBMIT_PATH}",
                json=body,
                timeout=(CONNECT_TIMEOUT, self.timeout),
                verify=self.verify_ssl,
            )
            response.raise_for_status()
            correlation_id = int(response.json()["correlation_id"])
        except requests.exceptions.RequestException as e:
            logger.error("Oracle submission failed: %s", type(e).__name__)
            raise OracleUnavailable(
                "Decryption oracle unreachable",
                operation="request_decryption",
                details={"endpoint": self.endpoint},
                cause=e,
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            raise OracleUnavailable(
                "Oracle response carried no correlation id",
                operation="request_decryption",
                details={"endpoint": self.endpoint},
                cause=e,
            ) from e

        logger.info("Batch submitted to remote oracle", extra={"correlation_id": correlation_id})
        return correlation_id


def remote_oracle_from_env() -> Ed25519ProofVerifier | None:
    """
    Build a remote oracle view from the environment.

    Returns:
        None unless both SHIELDROUTE_ORACLE_URL and SHIELDROUTE_ORACLE_PUBLIC_KEY are set
    """
    endpoint = os.getenv("SHIELDROUTE_ORACLE_URL")
    public_key = os.getenv("SHIELDROUTE_ORACLE_PUBLIC_KEY")
    if not endpoint or not public_key:
        return None

    callback_url = os.getenv("SHIELDROUTE_CALLBACK_URL", "http://127.0.0.1:5000/oracle/callback")
    logger.info("Using remote decryption oracle at %s", endpoint)
    return Ed25519ProofVerifier(public_key, submit=HttpOracleSubmitter(endpoint, callback_url))
