"""
Jira REST API Client Module
Paged access to the Jira Cloud platform and agile APIs.
"""

import time
from typing import Dict, Generator, List, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from agile_mirror.config_manager import ConfigManager
from agile_mirror.errors import JiraAPIError, TransientFetchError
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUSES = [429, 500, 502, 503, 504]


class JiraClient:
    """
    Jira REST API client with offset pagination, rate limiting and retries.
    """

    def __init__(self, jira_config: Dict = None):
        """
        Initialize Jira client.

        Args:
            jira_config: Jira settings; read from ConfigManager when omitted
        """
        if jira_config is None:
            jira_config = ConfigManager().get_jira_config()

        self.base_url = (jira_config.get('url') or '').rstrip('/')
        self.username = jira_config.get('username') or ''
        self.api_token = jira_config.get('api_token') or ''

        self.requests_per_second = jira_config.get('requests_per_second', 5)
        self.max_retries = jira_config.get('max_retries', 3)
        self.page_retries = jira_config.get('page_retries', 2)
        self.retry_delay = jira_config.get('retry_delay', 1)
        self.timeout = jira_config.get('timeout', 30)
        self.page_size = jira_config.get('page_size', 50)
        self.max_pages = jira_config.get('max_pages', 200)
        self.story_points_field = jira_config.get('story_points_field', 'customfield_10016')
        self.sprint_field = jira_config.get('sprint_field', 'customfield_10020')

        self._last_request_time = 0
        self._session = self._create_session()

        logger.info(f"Jira client initialized for {self.base_url}")

    def _create_session(self) -> requests.Session:
        """Create requests session with retry logic."""
        session = requests.Session()
        session.auth = (self.username, self.api_token)
        session.headers.update({
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        })

        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=self.retry_delay,
            status_forcelist=RETRYABLE_STATUSES,
            allowed_methods=['GET']
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount('https://', adapter)
        session.mount('http://', adapter)

        return session

    def _rate_limit(self) -> None:
        """Apply rate limiting between requests."""
        if self.requests_per_second <= 0:
            return

        min_interval = 1.0 / self.requests_per_second
        elapsed = time.time() - self._last_request_time

        if elapsed < min_interval:
            time.sleep(min_interval - elapsed)

        self._last_request_time = time.time()

    def _make_request(self, endpoint: str, params: Dict = None) -> Dict:
        """
        Make a GET request to the Jira API.

        Args:
            endpoint: API endpoint relative to /rest/
            params: Query parameters

        Returns:
            Response JSON

        Raises:
            TransientFetchError: Network failure, or 429/5xx after retries
            JiraAPIError: Any other failed response
        """
        self._rate_limit()

        url = urljoin(f"{self.base_url}/rest/", endpoint)

        try:
            response = self._session.request(
                method='GET',
                url=url,
                params=params,
                timeout=self.timeout
            )
        except (requests.exceptions.ConnectionError,
                requests.exceptions.Timeout,
                requests.exceptions.RetryError) as e:
            logger.error(f"Request to {endpoint} failed after retries: {e}")
            raise TransientFetchError(f"Request failed: {e}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {e}")
            raise JiraAPIError(f"Request failed: {e}")

        if response.status_code in RETRYABLE_STATUSES:
            raise TransientFetchError(
                f"Jira returned {response.status_code} for {endpoint}",
                response.status_code
            )
        elif response.status_code == 401:
            raise JiraAPIError("Authentication failed. Check your credentials.", 401)
        elif response.status_code == 403:
            raise JiraAPIError("Access forbidden. Check permissions.", 403)
        elif response.status_code == 404:
            raise JiraAPIError(f"Resource not found: {endpoint}", 404)
        elif response.status_code >= 400:
            raise JiraAPIError(
                f"API error: {response.text}",
                response.status_code,
                self._json_or_none(response)
            )

        return response.json() if response.text else {}

    @staticmethod
    def _json_or_none(response: requests.Response) -> Optional[Dict]:
        try:
            return response.json()
        except ValueError:
            return None

    def _fetch_page(self, endpoint: str, params: Dict) -> Dict:
        """Fetch one page, retrying transient failures a bounded number of times."""
        attempt = 0
        while True:
            try:
                return self._make_request(endpoint, params=dict(params))
            except TransientFetchError as e:
                attempt += 1
                if attempt > self.page_retries:
                    logger.error(f"Giving up on {endpoint} at startAt={params.get('startAt')}: {e}")
                    raise
                delay = self.retry_delay * attempt
                logger.warning(f"Transient failure on {endpoint}, retry {attempt}/{self.page_retries} in {delay}s")
                time.sleep(delay)

    def _paginate(
        self,
        endpoint: str,
        params: Dict = None,
        data_key: str = 'values'
    ) -> Generator[Dict, None, None]:
        """
        Walk an offset-paginated endpoint.

        Starts at startAt=0 and advances by the page size until a page comes
        back short, the response sets isLast, or max_pages pages were read.

        Args:
            endpoint: API endpoint
            params: Extra query parameters
            data_key: Key containing results in response

        Yields:
            Individual result items
        """
        params = dict(params or {})
        start_at = 0

        for page in range(self.max_pages):
            params['startAt'] = start_at
            params['maxResults'] = self.page_size

            response = self._fetch_page(endpoint, params)
            items = response.get(data_key) or []

            for item in items:
                yield item

            if response.get('isLast') or len(items) < self.page_size:
                return

            start_at += self.page_size
            logger.debug(f"Fetched {start_at} items from {endpoint}")

        logger.warning(f"Stopped paging {endpoint} after {self.max_pages} pages")

    # ========================================
    # Project Methods
    # ========================================

    def fetch_projects(self) -> List[Dict]:
        """Fetch all accessible projects."""
        projects = list(self._paginate('api/3/project/search', params={'expand': 'description,lead'}))
        logger.info(f"Fetched {len(projects)} projects")
        return projects

    # ========================================
    # Board & Sprint Methods (Agile API)
    # ========================================

    def fetch_boards(self, project_key: str = None) -> List[Dict]:
        """Fetch all boards, optionally filtered by project."""
        params = {}
        if project_key:
            params['projectKeyOrId'] = project_key

        boards = list(self._paginate('agile/1.0/board', params=params))
        logger.info(f"Fetched {len(boards)} boards")
        return boards

    def fetch_board_configuration(self, board_id: int) -> Dict:
        """Fetch board configuration (columns, constraints)."""
        return self._make_request(f'agile/1.0/board/{board_id}/configuration')

    def fetch_sprints(self, board_id: int) -> List[Dict]:
        """Fetch all sprints of a board, in every state."""
        return list(self._paginate(f'agile/1.0/board/{board_id}/sprint'))

    def fetch_sprint_issues(self, sprint_id: int) -> List[Dict]:
        """Fetch issues in a sprint."""
        return list(self._paginate(
            f'agile/1.0/sprint/{sprint_id}/issue',
            params={'fields': ','.join(self.issue_fields)},
            data_key='issues'
        ))

    def fetch_board_issues(self, board_id: int) -> List[Dict]:
        """Fetch issues on a board (kanban column membership)."""
        return list(self._paginate(
            f'agile/1.0/board/{board_id}/issue',
            params={'fields': ','.join(self.issue_fields)},
            data_key='issues'
        ))

    @property
    def issue_fields(self) -> List[str]:
        return [
            'summary', 'issuetype', 'priority', 'status', 'assignee', 'project',
            'created', 'updated', 'resolutiondate', 'parent', 'labels', 'flagged',
            self.story_points_field, self.sprint_field,
        ]

    # ========================================
    # Issue Methods
    # ========================================

    def fetch_issue_changelog(self, issue_key: str) -> List[Dict]:
        """Fetch changelog histories for an issue, oldest first as returned by Jira."""
        return list(self._paginate(f'api/3/issue/{issue_key}/changelog'))

    # ========================================
    # Utility Methods
    # ========================================

    def test_connection(self) -> bool:
        """Test connection to Jira API."""
        try:
            self._make_request('api/3/myself')
            logger.info("Jira connection test successful")
            return True
        except JiraAPIError as e:
            logger.error(f"Jira connection test failed: {e.message}")
            return False

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self._session.close()
