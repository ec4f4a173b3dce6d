"""
Data source handlers for the Timesheet Ticket Matcher.

Responsible for retrieving data from external systems:
- Jira REST API (ticket search, single ticket lookup, worklog submission)
- Offline ticket files (YAML or JSON) for runs without Jira access
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

import httpx
import yaml
from pydantic import ValidationError

from .config import JiraConfig
from .models import JiraUser, SearchPage, TicketRecord


logger = logging.getLogger(__name__)


REQUIRED_FIELDS = (
    "key",
    "summary",
    "status",
    "assignee",
    "reporter",
    "description",
    "issuetype",
)
SUB_TICKET_FIELDS = (
    "key",
    "summary",
    "status",
    "assignee",
    "description",
    "issuetype",
    "parent",
)

# Filtered out of the user's own tickets before matching
USER_TICKET_EXCLUDED_TYPES = ("story",)
USER_TICKET_EXCLUDED_STATUSES = ("done", "deployed")


class DataSourceError(Exception):
    """Base exception for data source errors."""
    pass


class JiraAPIError(DataSourceError):
    """Error when communicating with the Jira API."""
    pass


class JiraAuthError(JiraAPIError):
    """Jira rejected the credentials."""
    pass


class TicketFileError(DataSourceError):
    """Error when reading an offline ticket file."""
    pass


class JiraClient:
    """
    Client for the Jira Cloud REST API (v3).

    Authenticates with basic auth (account email + API token).
    """

    def __init__(self, config: JiraConfig):
        """
        Initialize the Jira client.

        Args:
            config: Jira configuration with URL and credentials.
        """
        self._config = config
        self._client: Optional[httpx.Client] = None

    def __enter__(self) -> "JiraClient":
        """Context manager entry."""
        self._client = httpx.Client(
            base_url=f"{self._config.base_url.rstrip('/')}/rest/api/3/",
            auth=(self._config.email, self._config.api_token),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=self._config.request_timeout,
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        if self._client:
            self._client.close()
            self._client = None

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """
        Send a request and decode the JSON body.

        Raises:
            JiraAuthError: On 401 responses.
            JiraAPIError: On any other HTTP, transport or decoding failure.
        """
        if not self._client:
            raise RuntimeError("Client must be used within a context manager")

        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"HTTP error calling Jira {method} {path}: {e}")
            if status_code == 401:
                raise JiraAuthError(
                    "Authentication failed (401): Check JIRA_EMAIL and JIRA_API_TOKEN in .env"
                ) from e
            raise JiraAPIError(f"HTTP error: {status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Request error calling Jira {method} {path}: {e}")
            raise JiraAPIError(f"Request failed: {str(e)}") from e
        except ValueError as e:
            logger.error(f"Invalid JSON from Jira {method} {path}: {e}")
            raise JiraAPIError(f"Invalid JSON response: {str(e)}") from e

    def test_authentication(self) -> JiraUser:
        """
        Verify credentials and identify the current user.

        Returns:
            The authenticated JiraUser.
        """
        data = self._request("GET", "myself")
        try:
            return JiraUser(
                account_id=data["accountId"],
                display_name=data.get("displayName", ""),
            )
        except KeyError as e:
            raise JiraAuthError("Authentication response missing accountId") from e

    def search_tickets(
        self,
        jql: str,
        fields: Sequence[str] = REQUIRED_FIELDS,
        max_results: Optional[int] = None,
        next_page_token: Optional[str] = None,
        parent_epic: Optional[str] = None,
    ) -> SearchPage:
        """
        Fetch one page of issues matching a JQL query.

        Malformed issues are skipped with a warning.

        Args:
            jql: JQL query.
            fields: Issue fields to request.
            max_results: Page size (defaults to the configured maximum).
            next_page_token: Token of the page to fetch.
            parent_epic: Epic key recorded on every returned ticket.

        Returns:
            SearchPage with parsed tickets and pagination state.
        """
        payload = {
            "jql": jql,
            "fields": list(fields),
            "maxResults": max_results or self._config.max_results,
        }
        if next_page_token:
            payload["nextPageToken"] = next_page_token

        data = self._request("POST", "search/jql", json=payload)

        issues = []
        for raw_issue in data.get("issues", []):
            try:
                issues.append(TicketRecord.from_jira_issue(raw_issue, parent_epic=parent_epic))
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Skipping malformed issue entry: {e}")

        return SearchPage(
            issues=issues,
            is_last=bool(data.get("isLast", True)),
            next_page_token=data.get("nextPageToken"),
        )

    def search_all_tickets(
        self,
        jql: str,
        fields: Sequence[str] = REQUIRED_FIELDS,
        parent_epic: Optional[str] = None,
    ) -> list[TicketRecord]:
        """Fetch every page of a JQL query."""
        tickets: list[TicketRecord] = []
        next_page_token = None

        while True:
            page = self.search_tickets(
                jql,
                fields=fields,
                next_page_token=next_page_token,
                parent_epic=parent_epic,
            )
            tickets.extend(page.issues)
            if page.is_last or not page.next_page_token:
                break
            next_page_token = page.next_page_token

        logger.debug(f"JQL '{jql}' returned {len(tickets)} tickets")
        return tickets

    def fetch_user_tickets(self, account_id: str, display_name: str) -> list[TicketRecord]:
        """
        Fetch open tickets assigned to or reported by the user.

        Tickets whose assignee or reporter name contains the user's display
        name are preferred; if none do, every open ticket is returned.
        """
        jql = f'(assignee="{account_id}" OR reporter="{account_id}") AND type != Story'
        tickets = [
            ticket
            for ticket in self.search_all_tickets(jql, fields=REQUIRED_FIELDS)
            if ticket.issue_type.lower() not in USER_TICKET_EXCLUDED_TYPES
            and ticket.status.lower() not in USER_TICKET_EXCLUDED_STATUSES
        ]

        name = display_name.lower()
        own = [
            ticket
            for ticket in tickets
            if name and (name in ticket.assignee.lower() or name in ticket.reporter.lower())
        ]

        logger.info(f"Fetched {len(tickets)} user tickets ({len(own)} matching '{display_name}')")
        return own or tickets

    def fetch_epic_sub_tickets(self, epic_keys: Iterable[str]) -> list[TicketRecord]:
        """Fetch the unassigned child tickets of each epic."""
        sub_tickets: list[TicketRecord] = []

        for epic_key in epic_keys:
            jql = f'("Epic Link" = {epic_key} OR parent = {epic_key}) AND assignee is EMPTY'
            children = self.search_all_tickets(
                jql,
                fields=SUB_TICKET_FIELDS,
                parent_epic=epic_key,
            )
            unassigned = [ticket for ticket in children if ticket.assignee == "Unassigned"]
            logger.info(f"Epic {epic_key}: {len(unassigned)} unassigned sub-tickets")
            sub_tickets.extend(unassigned)

        return sub_tickets

    def get_ticket_by_key(self, ticket_key: str) -> TicketRecord:
        """
        Fetch a single ticket, e.g. for a manual selection.

        Raises:
            JiraAPIError: If the ticket cannot be fetched or parsed.
        """
        data = self._request("GET", f"issue/{ticket_key}")
        try:
            return TicketRecord.from_jira_issue(data)
        except (KeyError, TypeError, ValidationError) as e:
            raise JiraAPIError(f"Malformed issue {ticket_key}: {e}") from e

    def submit_worklog(
        self,
        issue_key: str,
        comment: str,
        started: str,
        duration_seconds: int,
    ) -> dict:
        """
        Log time against an issue.

        Args:
            issue_key: Ticket key.
            comment: Worklog comment (plain text).
            started: Start time in Jira's ``yyyy-MM-ddTHH:mm:ss.SSSZ`` format.
            duration_seconds: Time spent.

        Returns:
            The created worklog as returned by Jira.
        """
        payload = {
            "comment": {
                "type": "doc",
                "version": 1,
                "content": [
                    {
                        "type": "paragraph",
                        "content": [{"type": "text", "text": comment}],
                    }
                ],
            },
            "started": started,
            "timeSpentSeconds": duration_seconds,
        }
        return self._request("POST", f"issue/{issue_key}/worklog", json=payload)


def deduplicate_tickets(tickets: Iterable[TicketRecord]) -> list[TicketRecord]:
    """Drop repeated keys, keeping the first occurrence."""
    seen: set[str] = set()
    unique = []
    for ticket in tickets:
        if ticket.key in seen:
            continue
        seen.add(ticket.key)
        unique.append(ticket)
    return unique


def fetch_ticket_universe(
    config: JiraConfig,
    epic_keys: Optional[Iterable[str]] = None,
) -> list[TicketRecord]:
    """
    Fetch every ticket a todo list can be matched against.

    Combines the user's own tickets with the unassigned children of the
    given epics (the configured ones by default).

    Raises:
        DataSourceError: If any Jira call fails.
    """
    epic_keys = list(config.epic_keys if epic_keys is None else epic_keys)

    with JiraClient(config) as client:
        user = client.test_authentication()
        logger.info(f"Authenticated to Jira as {user.display_name}")

        user_tickets = client.fetch_user_tickets(user.account_id, user.display_name)
        common_tickets = client.fetch_epic_sub_tickets(epic_keys)

    universe = deduplicate_tickets([*user_tickets, *common_tickets])
    logger.info(
        f"Ticket universe: {len(universe)} tickets "
        f"({len(user_tickets)} user, {len(common_tickets)} from epics)"
    )
    return universe


# Offline files may use the camelCase names of the original API payloads
_FIELD_ALIASES = {
    "issueType": "issue_type",
    "issuetype": "issue_type",
    "parentEpic": "parent_epic",
}


def _parse_ticket_entry(data: dict) -> TicketRecord:
    if "fields" in data:
        return TicketRecord.from_jira_issue(data)
    normalized = {_FIELD_ALIASES.get(name, name): value for name, value in data.items()}
    return TicketRecord(**normalized)


def parse_ticket_file(content: str) -> list[TicketRecord]:
    """
    Parse YAML (or JSON) ticket data into ticket records.

    Implements graceful handling of:
    - Different top-level shapes (``tickets:``, ``issues:``, bare list)
    - Malformed entries (skipped with warning)
    """
    data = yaml.safe_load(content)

    if not data:
        logger.warning("Empty ticket file, using empty ticket universe")
        return []

    entries = None
    possible_paths = [
        lambda d: d.get("tickets", []),
        lambda d: d.get("issues", []),
        lambda d: d if isinstance(d, list) else [],
    ]
    for path_fn in possible_paths:
        try:
            result = path_fn(data)
            if result:
                entries = result
                break
        except (AttributeError, TypeError):
            continue

    if not entries:
        logger.warning("Could not find tickets in file, using empty ticket universe")
        return []

    tickets = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning(f"Skipping non-mapping ticket entry at index {idx}")
            continue
        try:
            tickets.append(_parse_ticket_entry(entry))
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Skipping malformed ticket entry at index {idx}: {e}")

    return deduplicate_tickets(tickets)


def load_ticket_file(path: Path) -> list[TicketRecord]:
    """
    Load an offline ticket universe from disk.

    Raises:
        TicketFileError: If the file cannot be read or is not valid YAML.
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
        tickets = parse_ticket_file(content)
    except OSError as e:
        raise TicketFileError(f"Cannot read ticket file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise TicketFileError(f"Invalid YAML in {path}: {e}") from e

    logger.info(f"Loaded {len(tickets)} tickets from {path}")
    return tickets
