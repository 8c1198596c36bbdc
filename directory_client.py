"""
Directory client for Azure AD via the Microsoft Graph API using MSAL.

Authenticates as the application (client-credentials flow), so a client
secret is required. Group membership, user-by-email lookup and user
validation are the only calls the service needs.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import msal
import requests

from config import AzureConfig, get_config

logger = logging.getLogger(__name__)

AUTHORITY_BASE = "https://login.microsoftonline.com"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]

USER_ODATA_TYPE = "#microsoft.graph.user"
USER_SELECT = "id,givenName,surname,displayName,mail,userPrincipalName"
MEMBER_SELECT = "id,displayName,mail,userPrincipalName"
DEFAULT_RETRY_AFTER_SECONDS = 5

# Graph error codes that mean "no such object"
NOT_FOUND_CODES = frozenset({
    "Request_ResourceNotFound",
    "ResourceNotFound",
    "notFound",
})

# Graph error codes that mean "the app may not read this"
FORBIDDEN_CODES = frozenset({
    "Authorization_RequestDenied",
    "ErrorAccessDenied",
    "AccessDenied",
    "accessDenied",
})


class DirectoryError(Exception):
    """Base exception for directory client errors."""
    pass


class DirectoryNotFoundError(DirectoryError):
    """The requested user or group does not exist."""
    pass


class DirectoryForbiddenError(DirectoryError):
    """The application lacks permission for the requested object."""
    pass


class DirectoryConfigurationError(DirectoryError):
    """Credentials are missing or token acquisition failed."""
    pass


@dataclass
class DirectoryUser:
    """A user as seen by the directory."""
    id: str
    display_name: Optional[str]
    email: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "display_name": self.display_name, "email": self.email}


def _retry_after_seconds(value: Optional[str]) -> int:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(int(value), 0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable Retry-After header: %r", value)
        return DEFAULT_RETRY_AFTER_SECONDS
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(int((when - datetime.now(timezone.utc)).total_seconds()), 0)


def _display_name(user: Dict[str, Any]) -> str:
    first = user.get("givenName")
    last = user.get("surname")
    if first and last:
        return f"{first} {last}"
    return user.get("displayName") or ""


def _user_from_graph(user: Dict[str, Any], full_name: bool = False) -> DirectoryUser:
    return DirectoryUser(
        id=user["id"],
        display_name=_display_name(user) if full_name else user.get("displayName"),
        email=user.get("mail") or user.get("userPrincipalName"),
    )


def classify_graph_error(
    status_code: Optional[int],
    error_code: Optional[str],
    operation: str,
    message: str = "",
) -> DirectoryError:
    """Map a Graph failure to the matching DirectoryError subclass."""
    if status_code == 404 or error_code in NOT_FOUND_CODES:
        return DirectoryNotFoundError(f"User not found: {operation}")
    if status_code == 403 or error_code in FORBIDDEN_CODES:
        return DirectoryForbiddenError(f"Permission denied: {operation}")
    return DirectoryError(f"Graph API error: {operation} - {message or error_code or status_code}")


class AzureAdService:
    """
    Reads users and group membership from Microsoft Graph.

    Tokens are obtained with MSAL's confidential client; MSAL caches the
    app token in memory and refreshes it when it expires.
    """

    def __init__(
        self,
        config: Optional[AzureConfig] = None,
        session: Optional[requests.Session] = None,
        max_retries: int = 5,
    ):
        self.config = config or get_config().azure

        if not self.config.client_secret:
            raise DirectoryConfigurationError(
                "Azure client secret is required for Graph API access"
            )

        self.authority = f"{AUTHORITY_BASE}/{self.config.tenant_id}"
        self._app = msal.ConfidentialClientApplication(
            client_id=self.config.client_id,
            client_credential=self.config.client_secret,
            authority=self.authority,
        )
        self._session = session or requests.Session()
        self.max_retries = max_retries

    def _get_token(self) -> str:
        result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPES)
        if "access_token" not in result:
            error = result.get("error_description") or result.get("error", "Unknown error")
            raise DirectoryConfigurationError(f"Failed to acquire Graph token: {error}")
        return result["access_token"]

    def _get(
        self,
        url: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        GET a Graph URL with throttle handling.

        Args:
            url: Absolute URL or path relative to the Graph base URL
            operation: Description used in error messages
            params: Optional query parameters

        Returns:
            JSON response data
        """
        if not url.startswith("http"):
            url = f"{self.config.graph_base_url}{url}"

        for attempt in range(self.max_retries):
            headers = {"Authorization": f"Bearer {self._get_token()}"}
            try:
                response = self._session.get(
                    url, headers=headers, params=params,
                    timeout=self.config.request_timeout,
                )
            except requests.exceptions.Timeout:
                logger.warning("Graph request timeout, attempt %s/%s", attempt + 1, self.max_retries)
                time.sleep(2 * (attempt + 1))
                continue
            except requests.exceptions.RequestException as e:
                raise DirectoryError(f"Graph API error: {operation} - {e}") from e

            if response.status_code == 200:
                return response.json()

            if response.status_code == 429:
                retry_after = _retry_after_seconds(response.headers.get("Retry-After"))
                logger.warning(
                    "Throttled by Graph API, waiting %ss (attempt %s/%s)",
                    retry_after, attempt + 1, self.max_retries,
                )
                time.sleep(retry_after)
                continue

            error_code = None
            message = response.text
            try:
                error = response.json().get("error") or {}
                error_code = error.get("code")
                message = error.get("message") or message
            except ValueError:
                pass
            raise classify_graph_error(response.status_code, error_code, operation, message)

        raise DirectoryError(f"Graph API error: {operation} - retries exhausted")

    def get_group_members(self, group_id: str) -> List[DirectoryUser]:
        """
        List the user members of a group.

        Follows ``@odata.nextLink`` paging and drops non-user members
        (devices, nested groups, service principals).

        Raises:
            DirectoryNotFoundError: If the group does not exist
            DirectoryForbiddenError: If the app may not read the group
            DirectoryError: On any other Graph failure
        """
        logger.info("[azureFetchGroupMembers] Fetching members for group: %s", group_id)

        users: List[DirectoryUser] = []
        url: Optional[str] = f"/groups/{group_id}/members"
        params: Optional[Dict[str, Any]] = {"$select": MEMBER_SELECT}
        try:
            while url:
                page = self._get(url, "fetching group members", params=params)
                for member in page.get("value", []):
                    if member.get("@odata.type") == USER_ODATA_TYPE:
                        users.append(_user_from_graph(member))
                url = page.get("@odata.nextLink")
                # nextLink already carries the query string
                params = None
        except DirectoryError as e:
            logger.error(
                "[azureFetchGroupMembers] Failed to fetch group members for %s: %s", group_id, e
            )
            raise type(e)(f"Failed to fetch group members: {e}") from e

        logger.info("[azureFetchGroupMembers] Found %d users in group %s", len(users), group_id)
        return users

    def get_user_by_email(self, email: str) -> DirectoryUser:
        """
        Look up a user by email address (or UPN).

        Raises:
            DirectoryNotFoundError: If no such user exists
            DirectoryForbiddenError: If the app may not read the user
        """
        logger.info("[azureGetUserByEmail] Looking up user by email: %s", email)
        try:
            user = self._get(
                f"/users/{email}", "looking up user by email",
                params={"$select": USER_SELECT},
            )
        except DirectoryError as e:
            logger.error("[azureGetUserByEmail] Failed to find user by email %s: %s", email, e)
            raise

        logger.info("[azureGetUserByEmail] Found user: %s (%s)", user.get("id"), email)
        return _user_from_graph(user, full_name=True)

    def validate_user(self, user_id: str) -> DirectoryUser:
        """
        Confirm a user exists and return their directory details.

        Raises:
            DirectoryNotFoundError: If no such user exists
            DirectoryForbiddenError: If the app may not read the user
        """
        logger.info("[azureValidateUser] Validating user: %s", user_id)
        try:
            user = self._get(
                f"/users/{user_id}", "validating user",
                params={"$select": USER_SELECT},
            )
        except DirectoryError as e:
            logger.error("[azureValidateUser] Failed to validate user %s: %s", user_id, e)
            raise

        logger.info("[azureValidateUser] User validated: %s", user_id)
        return _user_from_graph(user, full_name=True)


_directory_client: Optional[AzureAdService] = None


def get_directory_client() -> AzureAdService:
    """Get or create the shared directory client."""
    global _directory_client
    if _directory_client is None:
        _directory_client = AzureAdService()
    return _directory_client
