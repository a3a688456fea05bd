"""
GitHub collector for complyvault.

Collects authorization and policy evidence from a GitHub organization:
membership, repository collaborators and their permissions, teams, branch
protection, rulesets, Dependabot alerts, pull request approval history and
MFA enforcement. All API calls are read-only GETs.

Required token permissions (fine-grained):
    - Organization: Members (read), Administration (read)
    - Repository: Administration (read), Metadata (read),
      Pull requests (read), Dependabot alerts (read)

Authentication:
    The token is read from the environment variable named by
    ``platform.token_env`` (default GITHUB_TOKEN). Provisioning it is the
    job of the workflow runner.

Rate Limiting:
    - 429 responses, and 403 responses with X-RateLimit-Remaining: 0 or a
      Retry-After header, raise RateLimitError (retried with backoff)
    - Retry-After / X-RateLimit-Reset are honoured when present
    - 5xx responses and connection failures are transient as well

Pagination:
    Follows the ``Link: <...>; rel="next"`` header.
"""

from __future__ import annotations

import os
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import requests
from requests.utils import parse_header_links

from complyvault.collectors.base import (
    Artifact,
    ArtifactSpec,
    AuthenticationError,
    BaseCollector,
    CollectorError,
    FetchConnectionError,
    RateLimitError,
    ResourceNotFoundError,
    RunDeadline,
    TransientFetchError,
)
from complyvault.collectors.tabular import TabularForm

if TYPE_CHECKING:
    from complyvault.config.settings import Settings


ORG_MEMBER_COLUMNS = ["login", "id", "role", "type", "site_admin"]

COLLABORATOR_COLUMNS = [
    "repository",
    "login",
    "id",
    "role_name",
    "admin",
    "maintain",
    "push",
    "triage",
    "pull",
    "site_admin",
]

TEAM_COLUMNS = ["slug", "name", "privacy", "permission", "parent"]

REPO_TEAM_COLUMNS = ["repository", "slug", "name", "permission"]

BRANCH_PROTECTION_COLUMNS = [
    "repository",
    "branch",
    "protected",
    "required_approving_review_count",
    "dismiss_stale_reviews",
    "require_code_owner_reviews",
    "required_signatures",
    "enforce_admins",
    "required_status_checks",
    "required_linear_history",
    "allow_force_pushes",
    "allow_deletions",
]

RULESET_COLUMNS = [
    "repository",
    "id",
    "name",
    "target",
    "enforcement",
    "rule_types",
    "bypass_actor_count",
]

DEPENDABOT_ALERT_COLUMNS = [
    "repository",
    "number",
    "state",
    "severity",
    "package",
    "ecosystem",
    "ghsa_id",
    "cve_id",
    "manifest_path",
    "created_at",
]

PR_APPROVAL_COLUMNS = [
    "repository",
    "number",
    "title",
    "author",
    "base_branch",
    "merged_at",
    "approvals",
    "approvers",
    "changes_requested",
]

MFA_COLUMNS = [
    "organization",
    "two_factor_requirement_enabled",
    "members_without_2fa",
]


class GitHubCollector(BaseCollector):
    """
    GitHub evidence collector.

    Artifacts Collected (mandatory unless noted):
        - org_members: Organization members with their role
        - repo_collaborators: Collaborators and permissions per repository
        - teams: Organization teams (optional)
        - repo_teams: Team access per repository (optional)
        - branch_protection: Default branch protection per repository
        - rulesets: Repository rulesets with rules and bypass actors
        - dependabot_alerts: Open vulnerability alerts per repository
        - pr_approvals: Review approvals on recently merged PRs (optional)
        - org_mfa_enforcement: 2FA requirement and non-compliant members
          (optional; requires an owner token)

    Example:
        collector = GitHubCollector(settings)
        result = collector.collect()
        for name, artifact in result.artifacts.items():
            print(name, artifact.tabular.row_count)
    """

    platform = "github"

    def __init__(
        self,
        config: Settings,
        deadline: RunDeadline | None = None,
        token: str | None = None,
    ) -> None:
        """
        Initialize the GitHub collector.

        Args:
            config: Settings object containing platform configuration.
            deadline: Optional overall run deadline.
            token: API token. Defaults to the configured environment variable.
        """
        super().__init__(config, deadline)
        self.organization = config.platform.organization
        self.repositories = list(config.platform.repositories)
        self._per_page = config.platform.per_page
        self._timeout = config.platform.request_timeout
        self._base_url = config.platform.api_url.rstrip("/")
        self._token = token
        self._session: requests.Session | None = None

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _get_session(self) -> requests.Session:
        """
        Get or create a requests session with authentication.

        Raises:
            AuthenticationError: If no token is available.
        """
        if self._session is not None:
            return self._session

        token = self._token or os.environ.get(self.config.platform.token_env)
        if not token:
            raise AuthenticationError(
                f"No API token found. Set the {self.config.platform.token_env} "
                "environment variable.",
                platform=self.platform,
            )

        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "complyvault",
            }
        )
        return self._session

    def _api_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, dict[str, str]]:
        """
        Make an API request to GitHub.

        Args:
            method: HTTP method.
            endpoint: API path, or an absolute URL from a Link header.
            params: Query parameters.

        Returns:
            Tuple of (response JSON, response headers).

        Raises:
            AuthenticationError: If authentication fails or access is denied.
            ResourceNotFoundError: If the resource does not exist.
            RateLimitError: If rate limit is exceeded.
            TransientFetchError: On 5xx responses.
            FetchConnectionError: If the request fails in transport.
            CollectorError: On any other error status or an unreadable body.
        """
        session = self._get_session()
        if endpoint.startswith("http"):
            url = endpoint
        else:
            url = urljoin(self._base_url + "/", endpoint.lstrip("/"))

        self.deadline.check()
        start_time = time.time()

        try:
            response = session.request(method, url, params=params, timeout=self._timeout)
        except requests.exceptions.ConnectionError as e:
            raise FetchConnectionError(
                f"Failed to connect to GitHub: {e}",
                platform=self.platform,
            ) from e
        except requests.exceptions.Timeout as e:
            raise FetchConnectionError(
                f"GitHub request timed out: {e}",
                platform=self.platform,
            ) from e
        except requests.exceptions.RequestException as e:
            raise FetchConnectionError(
                f"GitHub request failed: {e}",
                platform=self.platform,
            ) from e

        duration_ms = (time.time() - start_time) * 1000
        self._log_api_call(method, endpoint, response.status_code, duration_ms)

        headers = dict(response.headers)
        remaining = headers.get("X-RateLimit-Remaining")
        if remaining is not None and remaining.isdigit() and int(remaining) < 10:
            self.logger.warning(f"Rate limit low: {remaining} requests remaining")

        status = response.status_code
        if status == 429 or (
            status == 403 and (remaining == "0" or "Retry-After" in headers)
        ):
            raise RateLimitError(
                "GitHub rate limit exceeded",
                platform=self.platform,
                retry_after=self._retry_after(headers),
            )

        if status == 401:
            raise AuthenticationError(
                "GitHub authentication failed. Check your access token.",
                platform=self.platform,
            )

        if status == 403:
            raise AuthenticationError(
                f"GitHub permission denied for {endpoint}. Check token scopes.",
                platform=self.platform,
            )

        if status == 404:
            raise ResourceNotFoundError(
                f"GitHub resource not found: {endpoint}",
                platform=self.platform,
            )

        if status >= 500:
            raise TransientFetchError(
                f"GitHub server error {status} for {endpoint}",
                platform=self.platform,
            )

        if status >= 400:
            raise CollectorError(
                f"GitHub request for {endpoint} failed with status {status}",
                platform=self.platform,
            )

        if status == 204 or not response.content:
            return [], headers

        try:
            return response.json(), headers
        except ValueError as e:
            raise CollectorError(
                f"GitHub returned malformed JSON for {endpoint}: {e}",
                platform=self.platform,
            ) from e

    @staticmethod
    def _retry_after(headers: dict[str, str]) -> float | None:
        """Seconds to wait, from Retry-After or X-RateLimit-Reset."""
        retry_after = headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return float(retry_after)
        reset = headers.get("X-RateLimit-Reset")
        if reset and reset.isdigit():
            return max(0.0, int(reset) - time.time())
        return None

    def _get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """GET a single resource with retries."""
        data, _ = self._with_retry(self._api_request, "GET", endpoint, params)
        return data

    def _paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        limit: int | None = None,
        items_key: str | None = None,
    ) -> list[Any]:
        """
        Paginate through a GitHub API endpoint.

        Args:
            endpoint: API endpoint path.
            params: Initial query parameters.
            limit: Maximum number of items to return.
            items_key: For endpoints that wrap the list in an object.

        Returns:
            List of all items from all pages.
        """
        all_items: list[Any] = []
        first_params = dict(params or {})
        first_params.setdefault("per_page", self._per_page)
        request_params: dict[str, Any] | None = first_params
        url = endpoint

        while True:
            data, headers = self._with_retry(self._api_request, "GET", url, request_params)

            if items_key is not None and isinstance(data, dict):
                data = data.get(items_key, [])
            if not isinstance(data, list):
                raise CollectorError(
                    f"Expected a list from {endpoint}, got {type(data).__name__}",
                    platform=self.platform,
                )
            all_items.extend(data)

            if limit and len(all_items) >= limit:
                all_items = all_items[:limit]
                break

            next_url = self._next_link(headers)
            if not next_url:
                break
            # The next link already carries the query string
            url = next_url
            request_params = None

        return all_items

    @staticmethod
    def _next_link(headers: dict[str, str]) -> str | None:
        link_header = headers.get("Link") or headers.get("link")
        if not link_header:
            return None
        for link in parse_header_links(link_header):
            if link.get("rel") == "next":
                return link.get("url")
        return None

    # -------------------------------------------------------------------------
    # Collector interface
    # -------------------------------------------------------------------------

    def artifact_specs(self) -> list[ArtifactSpec]:
        return [
            ArtifactSpec("org_members", self._collect_org_members),
            ArtifactSpec("repo_collaborators", self._collect_repo_collaborators),
            ArtifactSpec("teams", self._collect_teams, optional=True),
            ArtifactSpec("repo_teams", self._collect_repo_teams, optional=True),
            ArtifactSpec("branch_protection", self._collect_branch_protection),
            ArtifactSpec("rulesets", self._collect_rulesets),
            ArtifactSpec("dependabot_alerts", self._collect_dependabot_alerts),
            ArtifactSpec("pr_approvals", self._collect_pr_approvals, optional=True),
            ArtifactSpec("org_mfa_enforcement", self._collect_mfa_enforcement, optional=True),
        ]

    def fetch_ruleset(self, repository: str, name: str) -> dict[str, Any] | None:
        """
        Fetch a repository ruleset by name, with its full rule list.

        Used by the drift detector to read the live protection policy.

        Returns:
            The ruleset detail document, or None if no ruleset has that name.
        """
        summaries = self._paginate(
            f"/repos/{self.organization}/{repository}/rulesets",
            {"includes_parents": "true"},
        )
        for summary in summaries:
            if summary.get("name") == name:
                detail: dict[str, Any] = self._get(
                    f"/repos/{self.organization}/{repository}/rulesets/{summary['id']}"
                )
                return detail
        return None

    # -------------------------------------------------------------------------
    # Artifact fetchers
    # -------------------------------------------------------------------------

    def _collect_org_members(self) -> Artifact:
        """Organization members, with admins marked by role."""
        endpoint = f"/orgs/{self.organization}/members"
        members = self._paginate(endpoint, {"role": "all"})
        admins = {m.get("login") for m in self._paginate(endpoint, {"role": "admin"})}

        member_data = [
            {
                "login": m.get("login"),
                "id": m.get("id"),
                "role": "admin" if m.get("login") in admins else "member",
                "type": m.get("type"),
                "site_admin": m.get("site_admin"),
            }
            for m in members
        ]
        table = TabularForm.from_records(
            member_data, ORG_MEMBER_COLUMNS, sort_key=lambda r: str(r["login"])
        )

        return self.make_artifact(
            "org_members",
            {
                "organization": self.organization,
                "members": table.rows,
                "total_members": table.row_count,
                "admin_count": sum(1 for r in table.rows if r["role"] == "admin"),
            },
            table,
            [endpoint],
        )

    def _collect_repo_collaborators(self) -> Artifact:
        """Direct, outside and team-derived collaborators per repository."""
        collaborator_data = []
        sources = []
        for repository in self.repositories:
            endpoint = f"/repos/{self.organization}/{repository}/collaborators"
            sources.append(endpoint)
            for c in self._paginate(endpoint, {"affiliation": "all"}):
                permissions = c.get("permissions") or {}
                collaborator_data.append(
                    {
                        "repository": repository,
                        "login": c.get("login"),
                        "id": c.get("id"),
                        "role_name": c.get("role_name"),
                        "admin": permissions.get("admin"),
                        "maintain": permissions.get("maintain"),
                        "push": permissions.get("push"),
                        "triage": permissions.get("triage"),
                        "pull": permissions.get("pull"),
                        "site_admin": c.get("site_admin"),
                    }
                )

        table = TabularForm.from_records(
            collaborator_data,
            COLLABORATOR_COLUMNS,
            sort_key=lambda r: (r["repository"], str(r["login"])),
        )
        return self.make_artifact(
            "repo_collaborators",
            {
                "collaborators": table.rows,
                "total_collaborators": table.row_count,
                "admin_count": sum(1 for r in table.rows if r["admin"]),
            },
            table,
            sources,
        )

    def _collect_teams(self) -> Artifact:
        endpoint = f"/orgs/{self.organization}/teams"
        teams = self._paginate(endpoint)
        team_data = [
            {
                "slug": t.get("slug"),
                "name": t.get("name"),
                "privacy": t.get("privacy"),
                "permission": t.get("permission"),
                "parent": (t.get("parent") or {}).get("slug"),
            }
            for t in teams
        ]
        table = TabularForm.from_records(
            team_data, TEAM_COLUMNS, sort_key=lambda r: str(r["slug"])
        )
        return self.make_artifact(
            "teams",
            {"teams": table.rows, "total_teams": table.row_count},
            table,
            [endpoint],
        )

    def _collect_repo_teams(self) -> Artifact:
        team_data = []
        sources = []
        for repository in self.repositories:
            endpoint = f"/repos/{self.organization}/{repository}/teams"
            sources.append(endpoint)
            for t in self._paginate(endpoint):
                team_data.append(
                    {
                        "repository": repository,
                        "slug": t.get("slug"),
                        "name": t.get("name"),
                        "permission": t.get("permission"),
                    }
                )
        table = TabularForm.from_records(
            team_data,
            REPO_TEAM_COLUMNS,
            sort_key=lambda r: (r["repository"], str(r["slug"])),
        )
        return self.make_artifact(
            "repo_teams",
            {"repository_teams": table.rows, "total_grants": table.row_count},
            table,
            sources,
        )

    def _collect_branch_protection(self) -> Artifact:
        """
        Classic branch protection on each repository's default branch.

        GitHub answers 404 for an unprotected branch; that is recorded as a
        row with protected=false, not treated as a failure.
        """
        branch_data = []
        sources = []
        for repository in self.repositories:
            repo = self._get(f"/repos/{self.organization}/{repository}")
            branch = repo.get("default_branch") or "main"
            endpoint = f"/repos/{self.organization}/{repository}/branches/{branch}/protection"
            sources.append(endpoint)

            row: dict[str, Any] = {"repository": repository, "branch": branch}
            try:
                protection = self._get(endpoint)
            except ResourceNotFoundError:
                row["protected"] = False
                branch_data.append(row)
                continue

            reviews = protection.get("required_pull_request_reviews") or {}
            status_checks = protection.get("required_status_checks") or {}
            row.update(
                {
                    "protected": True,
                    "required_approving_review_count": reviews.get(
                        "required_approving_review_count"
                    ),
                    "dismiss_stale_reviews": reviews.get("dismiss_stale_reviews"),
                    "require_code_owner_reviews": reviews.get("require_code_owner_reviews"),
                    "required_signatures": _enabled(protection.get("required_signatures")),
                    "enforce_admins": _enabled(protection.get("enforce_admins")),
                    "required_status_checks": sorted(status_checks.get("contexts") or []),
                    "required_linear_history": _enabled(
                        protection.get("required_linear_history")
                    ),
                    "allow_force_pushes": _enabled(protection.get("allow_force_pushes")),
                    "allow_deletions": _enabled(protection.get("allow_deletions")),
                }
            )
            branch_data.append(row)

        table = TabularForm.from_records(
            branch_data,
            BRANCH_PROTECTION_COLUMNS,
            sort_key=lambda r: (r["repository"], str(r["branch"])),
        )
        return self.make_artifact(
            "branch_protection",
            {
                "branches": table.rows,
                "total_branches": table.row_count,
                "unprotected_count": sum(1 for r in table.rows if not r["protected"]),
            },
            table,
            sources,
        )

    def _collect_rulesets(self) -> Artifact:
        details = []
        ruleset_data = []
        sources = []
        for repository in self.repositories:
            endpoint = f"/repos/{self.organization}/{repository}/rulesets"
            sources.append(endpoint)
            for summary in self._paginate(endpoint, {"includes_parents": "true"}):
                detail = self._get(f"{endpoint}/{summary['id']}")
                details.append({"repository": repository, "ruleset": _strip_volatile(detail)})
                ruleset_data.append(
                    {
                        "repository": repository,
                        "id": detail.get("id"),
                        "name": detail.get("name"),
                        "target": detail.get("target"),
                        "enforcement": detail.get("enforcement"),
                        "rule_types": sorted(
                            {r.get("type") for r in detail.get("rules") or []}
                        ),
                        "bypass_actor_count": len(detail.get("bypass_actors") or []),
                    }
                )

        details.sort(key=lambda d: (d["repository"], d["ruleset"].get("id") or 0))
        table = TabularForm.from_records(
            ruleset_data,
            RULESET_COLUMNS,
            sort_key=lambda r: (r["repository"], r["id"] or 0),
        )
        return self.make_artifact(
            "rulesets",
            {"rulesets": details, "total_rulesets": table.row_count},
            table,
            sources,
        )

    def _collect_dependabot_alerts(self) -> Artifact:
        alert_data = []
        sources = []
        for repository in self.repositories:
            endpoint = f"/repos/{self.organization}/{repository}/dependabot/alerts"
            sources.append(endpoint)
            for alert in self._paginate(endpoint, {"state": "open"}):
                advisory = alert.get("security_advisory") or {}
                dependency = alert.get("dependency") or {}
                package = dependency.get("package") or {}
                alert_data.append(
                    {
                        "repository": repository,
                        "number": alert.get("number"),
                        "state": alert.get("state"),
                        "severity": advisory.get("severity"),
                        "package": package.get("name"),
                        "ecosystem": package.get("ecosystem"),
                        "ghsa_id": advisory.get("ghsa_id"),
                        "cve_id": advisory.get("cve_id"),
                        "manifest_path": dependency.get("manifest_path"),
                        "created_at": alert.get("created_at"),
                    }
                )

        table = TabularForm.from_records(
            alert_data,
            DEPENDABOT_ALERT_COLUMNS,
            sort_key=lambda r: (r["repository"], r["number"] or 0),
        )
        severity_counts: dict[str, int] = {}
        for row in table.rows:
            severity = row["severity"] or "unknown"
            severity_counts[severity] = severity_counts.get(severity, 0) + 1

        return self.make_artifact(
            "dependabot_alerts",
            {
                "alerts": table.rows,
                "total_open_alerts": table.row_count,
                "severity_counts": dict(sorted(severity_counts.items())),
            },
            table,
            sources,
        )

    def _collect_pr_approvals(self) -> Artifact:
        """Approvals on the most recently merged pull requests."""
        limit = self.config.platform.pr_history_limit
        pr_data = []
        sources = []
        for repository in self.repositories:
            endpoint = f"/repos/{self.organization}/{repository}/pulls"
            sources.append(endpoint)
            pulls = self._paginate(
                endpoint,
                {"state": "closed", "sort": "updated", "direction": "desc"},
                limit=limit,
            )
            for pull in pulls:
                if not pull.get("merged_at"):
                    continue
                number = pull.get("number")
                reviews = self._paginate(f"{endpoint}/{number}/reviews")
                # Latest review per reviewer wins
                latest: dict[str, str] = {}
                for review in reviews:
                    reviewer = (review.get("user") or {}).get("login")
                    if reviewer:
                        latest[reviewer] = review.get("state") or ""
                approvers = sorted(u for u, s in latest.items() if s == "APPROVED")
                pr_data.append(
                    {
                        "repository": repository,
                        "number": number,
                        "title": pull.get("title"),
                        "author": (pull.get("user") or {}).get("login"),
                        "base_branch": (pull.get("base") or {}).get("ref"),
                        "merged_at": pull.get("merged_at"),
                        "approvals": len(approvers),
                        "approvers": approvers,
                        "changes_requested": sum(
                            1 for s in latest.values() if s == "CHANGES_REQUESTED"
                        ),
                    }
                )

        table = TabularForm.from_records(
            pr_data,
            PR_APPROVAL_COLUMNS,
            sort_key=lambda r: (r["repository"], r["number"] or 0),
        )
        return self.make_artifact(
            "pr_approvals",
            {
                "pull_requests": table.rows,
                "total_merged": table.row_count,
                "merged_without_approval": sum(1 for r in table.rows if r["approvals"] == 0),
            },
            table,
            sources,
        )

    def _collect_mfa_enforcement(self) -> Artifact:
        """
        Organization 2FA requirement (requires an owner token).

        Non-owners see neither the flag nor the 2fa_disabled filter, which
        surfaces as a permission error and makes this artifact absent.
        """
        org_endpoint = f"/orgs/{self.organization}"
        members_endpoint = f"/orgs/{self.organization}/members"
        org = self._get(org_endpoint)
        enabled = org.get("two_factor_requirement_enabled")
        if enabled is None:
            raise AuthenticationError(
                "two_factor_requirement_enabled not visible; an owner token is required",
                platform=self.platform,
            )
        without_2fa = sorted(
            m.get("login") for m in self._paginate(members_endpoint, {"filter": "2fa_disabled"})
        )
        record = {
            "organization": self.organization,
            "two_factor_requirement_enabled": enabled,
            "members_without_2fa": without_2fa,
        }
        table = TabularForm.from_records([record], MFA_COLUMNS)
        return self.make_artifact(
            "org_mfa_enforcement",
            record,
            table,
            [org_endpoint, members_endpoint],
        )


def _enabled(value: Any) -> bool | None:
    """Classic protection settings come wrapped as {"enabled": bool}."""
    if isinstance(value, dict):
        return bool(value.get("enabled"))
    if value is None:
        return None
    return bool(value)


VOLATILE_FIELDS = ("created_at", "updated_at", "node_id", "_links", "current_user_can_bypass")


def _strip_volatile(document: dict[str, Any]) -> dict[str, Any]:
    """Drop timestamps and links so identical policy yields identical evidence."""
    return {k: v for k, v in document.items() if k not in VOLATILE_FIELDS}
