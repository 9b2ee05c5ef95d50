"""
HTTP/JSON client for the CardDAV bridge process.

The bridge speaks CardDAV to the remote server; this module talks to the
bridge over a small JSON API:
- Connecting a profile and discovering its address books
- Fetching the full contact enumeration of a connection
- Pushing (create/update) and deleting single contacts
- Health checks
- Exponential backoff retry for transport failures and 429/5xx responses
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote

import requests
from requests.exceptions import RequestException

from carddav_sync import __version__
from carddav_sync.sync.contact import RemoteContact

DEFAULT_BRIDGE_URL = "http://localhost:3001"

# Retry configuration defaults
DEFAULT_TIMEOUT = 30.0  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 30.0  # seconds

# Statuses meaning the bridge could not reach the CardDAV server
SERVER_UNAVAILABLE_STATUSES = (502, 503, 504)
CONFLICT_STATUSES = (409, 412)

logger = logging.getLogger(__name__)


class BridgeAPIError(Exception):
    """Raised when a bridge operation fails."""

    pass


class TransportError(BridgeAPIError):
    """Raised when the bridge cannot be reached or answers garbage."""

    pass


class ServerUnavailableError(BridgeAPIError):
    """Raised when the bridge reports the CardDAV server as unavailable."""

    pass


class ConflictError(BridgeAPIError):
    """Raised when the server rejects a push because of a version mismatch."""

    pass


@dataclass
class AddressBookInfo:
    """An address book reported by discovery."""

    href: str
    display_name: str = ""
    name: str = ""

    @classmethod
    def from_bridge_response(cls, data: dict[str, Any]) -> "AddressBookInfo":
        href = data.get("href") or data.get("url") or ""
        name = data.get("name") or href.rstrip("/").rsplit("/", 1)[-1]
        return cls(
            href=href,
            display_name=data.get("displayName") or data.get("display_name") or name,
            name=name,
        )


@dataclass
class DiscoveryResult:
    """Address books and server flavor reported by discovery."""

    address_books: list[AddressBookInfo] = field(default_factory=list)
    server_type: Optional[str] = None


@dataclass
class PushReceipt:
    """What the server assigned to a pushed contact."""

    etag: Optional[str]
    href: Optional[str]


class BridgeAPI:
    """
    Client for the bridge's JSON API.

    Every response is a JSON object with a ``success`` flag. Failures are
    mapped onto BridgeAPIError subclasses so callers can tell a down server
    (ServerUnavailableError) from a broken transport (TransportError) and a
    version conflict (ConflictError).

    Usage:
        bridge = BridgeAPI("http://localhost:3001")

        bridge.connect({"profileName": "work", "serverUrl": url, ...})
        contacts = bridge.fetch("work")
        receipt = bridge.push("work", uid, vcard_text, "my-contacts")
        bridge.delete("work", uid, receipt.href, "my-contacts")
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BRIDGE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the bridge client.

        Args:
            base_url: Bridge base URL
            timeout: Per-request timeout in seconds
            max_retries: Maximum attempts for retryable failures (default 3)
            initial_retry_delay: Initial backoff delay in seconds (default 1.0)
            max_retry_delay: Maximum backoff delay in seconds (default 30.0)
            session: Optional requests session, created when omitted
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "User-Agent": f"carddav-sync/{__version__}",
                "Accept": "application/json",
            }
        )

    def close(self) -> None:
        self.session.close()

    def _url(self, path: str, connection_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/{path}"
        if connection_id is not None:
            url = f"{url}/{quote(connection_id, safe='')}"
        return url

    def _retry_with_backoff(
        self, operation: Callable[[], requests.Response], operation_name: str
    ) -> requests.Response:
        """
        Execute a request with exponential backoff retry.

        Connection errors, timeouts, 429 and 5xx responses are retried.
        Other responses are returned to the caller as-is.

        Args:
            operation: Callable performing the HTTP request
            operation_name: Name for logging purposes

        Returns:
            The last HTTP response

        Raises:
            TransportError: If the bridge stays unreachable
            ServerUnavailableError: If the server stays unavailable
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            last_attempt = attempt >= self.max_retries - 1
            try:
                response = operation()
            except (requests.ConnectionError, requests.Timeout) as e:
                if not last_attempt:
                    logger.warning(
                        f"{operation_name} could not reach bridge, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue
                logger.error(f"{operation_name} failed after all retries: {e}")
                raise TransportError(
                    f"{operation_name}: bridge unreachable after "
                    f"{self.max_retries} attempts: {e}"
                ) from e
            except RequestException as e:
                logger.error(f"{operation_name} request failed: {e}")
                raise TransportError(f"{operation_name} failed: {e}") from e

            status_code = response.status_code
            if status_code == 429 or status_code >= 500:
                if not last_attempt:
                    logger.warning(
                        f"{operation_name} got HTTP {status_code}, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue

                if status_code in SERVER_UNAVAILABLE_STATUSES:
                    raise ServerUnavailableError(
                        f"{operation_name}: server unavailable (HTTP {status_code})"
                    )
                raise TransportError(
                    f"{operation_name} failed with HTTP {status_code} "
                    f"after {self.max_retries} attempts"
                )

            return response

        # Not reached: the loop either returns or raises
        raise TransportError(f"{operation_name} failed after all retries")

    def _request(
        self,
        method: str,
        url: str,
        operation_name: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Perform a bridge call and return its decoded JSON body.

        Raises:
            ConflictError: On HTTP 409/412 or a ``conflict`` flag
            ServerUnavailableError: On a ``serverError`` flag
            TransportError: On transport failure or a non-JSON body
            BridgeAPIError: When the bridge reports ``success: false``
        """

        def execute() -> requests.Response:
            return self.session.request(
                method, url, json=payload, timeout=self.timeout
            )

        response = self._retry_with_backoff(execute, operation_name)

        try:
            body = response.json()
        except ValueError as e:
            if response.status_code in CONFLICT_STATUSES:
                raise ConflictError(
                    f"{operation_name}: version conflict (HTTP {response.status_code})"
                ) from e
            raise TransportError(
                f"{operation_name}: invalid JSON response "
                f"(HTTP {response.status_code})"
            ) from e

        if not isinstance(body, dict):
            raise TransportError(f"{operation_name}: unexpected response shape")

        error = body.get("error") or body.get("message") or "unknown error"

        if response.status_code in CONFLICT_STATUSES or body.get("conflict"):
            raise ConflictError(f"{operation_name}: version conflict: {error}")

        if body.get("serverError") or body.get("serverUnavailable"):
            raise ServerUnavailableError(f"{operation_name}: {error}")

        if not response.ok or body.get("success") is False:
            logger.error(
                f"{operation_name} failed with HTTP {response.status_code}: {error}"
            )
            raise BridgeAPIError(f"{operation_name} failed: {error}")

        return body

    def connect(self, config: dict[str, Any]) -> dict[str, Any]:
        """
        Open a bridge session for a connection profile.

        Args:
            config: Connection payload (profileName, serverUrl, username,
                password)

        Returns:
            The bridge response body
        """
        logger.debug(f"Connecting profile {config.get('profileName')}")
        return self._request(
            "POST", self._url("connect"), "connect", payload=config
        )

    def discover(
        self,
        server_url: str,
        username: str,
        password: Optional[str],
        profile_name: str,
    ) -> DiscoveryResult:
        """
        Discover the address books of a server.

        Returns:
            DiscoveryResult with address books and the bridge's server type
        """
        body = self._request(
            "POST",
            self._url("discover"),
            f"discover({profile_name})",
            payload={
                "serverUrl": server_url,
                "username": username,
                "password": password,
                "profileName": profile_name,
            },
        )
        books = [
            AddressBookInfo.from_bridge_response(item)
            for item in body.get("addressbooks") or []
            if isinstance(item, dict)
        ]
        logger.info(f"Discovered {len(books)} address book(s) for {profile_name}")
        return DiscoveryResult(address_books=books, server_type=body.get("serverType"))

    def fetch(
        self, connection_id: str, default_address_book: Optional[str] = None
    ) -> list[RemoteContact]:
        """
        Fetch the full remote contact enumeration of a connection.

        Args:
            connection_id: Connection profile name
            default_address_book: Address book assumed for records that do
                not name one

        Returns:
            Remote contacts, possibly empty

        Raises:
            ServerUnavailableError: If the server is down
            TransportError: If the bridge cannot be reached
        """
        body = self._request(
            "POST", self._url("sync", connection_id), f"fetch({connection_id})"
        )

        records = (body.get("syncResult") or {}).get("contacts")
        if records is None:
            records = body.get("contacts") or []

        contacts = [
            RemoteContact.from_bridge_response(record, default_address_book)
            for record in records
            if isinstance(record, dict)
        ]
        logger.info(f"Fetched {len(contacts)} contacts for {connection_id}")
        return contacts

    def push(
        self,
        connection_id: str,
        uid: str,
        vcard_text: str,
        address_book: str,
        etag: Optional[str] = None,
        force_override: bool = False,
    ) -> PushReceipt:
        """
        Create or update one contact on the server.

        Args:
            connection_id: Connection profile name
            uid: vCard UID of the contact
            vcard_text: vCard text to store
            address_book: Target address book
            etag: Version token for the bridge's conflict check. Callers
                send None so the bridge fetches the current version itself.
            force_override: Overwrite regardless of remote changes

        Returns:
            PushReceipt with the new etag and href

        Raises:
            ConflictError: On a version mismatch
        """
        payload: dict[str, Any] = {
            "contact": {"uid": uid, "vcard": vcard_text, "etag": etag},
            "addressbook": address_book,
        }
        if force_override:
            payload["forceOverride"] = True

        body = self._request(
            "POST",
            self._url("push", connection_id),
            f"push({connection_id}, {uid})",
            payload=payload,
        )
        return PushReceipt(etag=body.get("etag"), href=body.get("href"))

    def delete(
        self,
        connection_id: str,
        uid: str,
        href: Optional[str],
        address_book: Optional[str],
    ) -> None:
        """Delete one contact from the server."""
        self._request(
            "DELETE",
            self._url("delete", connection_id),
            f"delete({connection_id}, {uid})",
            payload={"uid": uid, "contactUrl": href, "addressbook": address_book},
        )

    def health(self, connection_id: Optional[str] = None) -> dict[str, Any]:
        """
        Check bridge health, optionally for one connection.

        Returns:
            The bridge health body (status, version, ...)
        """
        return self._request(
            "GET", self._url("health", connection_id), "health"
        )
