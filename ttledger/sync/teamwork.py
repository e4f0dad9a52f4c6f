"""
Teamwork sync for ttledger.

Pulls projects, their tasks and time entries from a Teamwork site and
writes them into the ledger through the store contract:

- project  -> Project   external_id "project:<id>"
- task     -> Project   external_id "task:<id>", parent = its project
- time entry -> closed Timeblock  external_id "time:<id>"

Invariants:
    - Every remote record is looked up by external id before upserting,
      so a re-sync appends a version instead of creating a duplicate
    - Unchanged records are not re-written
    - Time entries are fetched incrementally from the start time of
      the last completed sync; local punches never move that watermark

How to change safely:
    - Keep external id prefixes stable; they are the join key with
      everything already stored
    - Test against httpx.MockTransport, never a live site
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ..errors import NotFoundError, SyncError
from ..store import (
    Project,
    ProjectRef,
    ProjectStore,
    TimeblockRef,
    TimeblockStore,
)
from ..store.models import TAG_SEPARATOR

logger = logging.getLogger(__name__)

PROJECT_PREFIX = "project:"
TASK_PREFIX = "task:"
TIME_PREFIX = "time:"


def parse_remote_time(value: str) -> datetime:
    """Parse a Teamwork timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class TeamworkClient:
    """Small synchronous client for the Teamwork v1 JSON API.

    Example:
        >>> with TeamworkClient("https://acme.teamwork.com", "key") as client:
        ...     for project in client.projects():
        ...         print(project["name"])
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        page_size: int = 250,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Teamwork site URL
            api_key: API key; sent as the basic-auth user name
            timeout: Request timeout in seconds
            page_size: Items requested per page
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self._client = httpx.Client(
            base_url=self.base_url,
            auth=(api_key, "xxx"),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TeamworkClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get(self, path: str, params: dict[str, Any]) -> httpx.Response:
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SyncError(
                f"Teamwork returned {exc.response.status_code} for {path}",
                url=str(exc.request.url),
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise SyncError(f"Teamwork request failed for {path}: {exc}", url=path) from exc
        return response

    def _paged(self, path: str, key: str, params: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        """Yield items across pages, following the X-Pages header."""
        page = 1
        while True:
            response = self._get(path, {**(params or {}), "page": page, "pageSize": self.page_size})
            try:
                data = response.json()
            except ValueError as exc:
                raise SyncError(f"Teamwork sent invalid JSON for {path}", url=path) from exc

            status = data.get("STATUS", "OK")
            if status != "OK":
                raise SyncError(f"Teamwork status {status!r} for {path}", url=path)

            items = data.get(key) or []
            yield from items

            pages = int(response.headers.get("X-Pages", "1"))
            if page >= pages or not items:
                return
            page += 1

    def projects(self) -> list[dict[str, Any]]:
        return list(self._paged("/projects.json", "projects"))

    def tasks(self, project_id: str | int) -> list[dict[str, Any]]:
        return list(self._paged(f"/projects/{project_id}/tasks.json", "todo-items"))

    def time_entries(
        self,
        updated_after: datetime | None = None,
        user_id: int | None = None,
    ) -> list[dict[str, Any]]:
        """Time entries, optionally only those updated after a watermark."""
        params: dict[str, Any] = {}
        if updated_after is not None:
            params["updatedAfterDate"] = updated_after.astimezone(timezone.utc).strftime(
                "%Y%m%d%H%M%S"
            )
        if user_id is not None:
            params["userId"] = user_id
        return list(self._paged("/time_entries.json", "time-entries", params))


@dataclass
class SyncResult:
    """Counts of records written by one sync.

    Attributes:
        projects: Project versions written
        tasks: Task (child project) versions written
        timeblocks: Time block versions written
        skipped: Time entries whose project is unknown locally
    """

    projects: int = 0
    tasks: int = 0
    timeblocks: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "projects": self.projects,
            "tasks": self.tasks,
            "timeblocks": self.timeblocks,
            "skipped": self.skipped,
        }


class TeamworkSync:
    """Pulls a Teamwork site into the ledger."""

    def __init__(
        self,
        client: TeamworkClient,
        projects: ProjectStore,
        timeblocks: TimeblockStore,
        user_id: int | None = None,
    ) -> None:
        self.client = client
        self.projects = projects
        self.timeblocks = timeblocks
        self.user_id = user_id

    def _upsert_project(
        self,
        name: str,
        external_id: str,
        parent_entity_id: int | None,
    ) -> tuple[Project, bool]:
        existing = self.projects.get(ProjectRef.by_external_id(external_id))
        if (
            existing is not None
            and existing.alive
            and existing.name == name
            and existing.parent_entity_id == parent_entity_id
        ):
            return existing, False
        return self.projects.upsert(name, external_id, parent_entity_id), True

    def sync_projects(self, result: SyncResult) -> None:
        """Mirror remote projects and their tasks as a two-level tree."""
        for remote in self.client.projects():
            project, written = self._upsert_project(
                remote["name"], f"{PROJECT_PREFIX}{remote['id']}", None
            )
            result.projects += int(written)

            for task in self.client.tasks(remote["id"]):
                _, written = self._upsert_project(
                    task["content"], f"{TASK_PREFIX}{task['id']}", project.entity_id
                )
                result.tasks += int(written)

    def sync_timeblocks(self, result: SyncResult) -> None:
        """Import time entries updated since the last completed sync."""
        db = self.timeblocks.db
        watermark = db.get_sync_watermark()
        started = self.timeblocks.clock()
        logger.info(
            "Fetching time entries",
            extra={"updated_after": watermark.isoformat() if watermark else None},
        )

        for entry in self.client.time_entries(watermark, self.user_id):
            task_id = entry.get("todo-item-id")
            if task_id not in (None, "", "0", 0):
                project_ref = ProjectRef.by_external_id(f"{TASK_PREFIX}{task_id}")
            else:
                project_ref = ProjectRef.by_external_id(f"{PROJECT_PREFIX}{entry['project-id']}")

            external_id = f"{TIME_PREFIX}{entry['id']}"
            start = parse_remote_time(entry["date"])
            end = start + timedelta(
                hours=int(entry.get("hours") or 0),
                minutes=int(entry.get("minutes") or 0),
            )
            billable = str(entry.get("isbillable", "0")) in ("1", "true", "True")
            notes = entry.get("description") or ""
            tags = tuple(
                t["name"].replace(TAG_SEPARATOR, " ")
                for t in entry.get("tags") or []
                if t.get("name")
            )

            existing = self.timeblocks.get(TimeblockRef.by_external_id(external_id))
            if existing is not None:
                owner = self.projects.get(project_ref)
                if (
                    owner is not None
                    and existing.project_entity_id == owner.entity_id
                    and (existing.start, existing.end) == (start, end)
                    and (existing.billable, existing.notes, existing.tags) == (billable, notes, tags)
                    and existing.alive
                ):
                    continue

            try:
                self.timeblocks.upsert(
                    TimeblockRef.of(existing) if existing is not None else None,
                    external_id,
                    project_ref,
                    start=start,
                    end=end,
                    billable=billable,
                    notes=notes,
                    tags=tags,
                    alive=True,
                )
            except NotFoundError:
                logger.warning(
                    "Skipping time entry for unknown project",
                    extra={"external_id": external_id, "project": project_ref.value},
                )
                result.skipped += 1
                continue
            result.timeblocks += 1

        db.set_sync_watermark(started)

    def down(self) -> SyncResult:
        """Full pull: projects and tasks first, then time entries."""
        result = SyncResult()
        self.sync_projects(result)
        self.sync_timeblocks(result)
        logger.info("Teamwork sync finished", extra=result.to_dict())
        return result
