"""Tenant workspace builder.

A workspace is a directory of plain files the tenant runtime reads on start:
identity and context documents rendered from Jinja2 templates, a JSON state
file, a memory area, and the skill manifest for the tenant's plan.

Builds are all-or-nothing.  Files are rendered into a private staging
directory next to the final location and moved into place with a single
``rename``; on any failure the staging directory is removed and nothing is
left under the tenant's namespace.  An existing namespace is never
overwritten.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from provisioner.credentials import validate_workspace_id
from provisioner.errors import InvalidWorkspaceId, WorkspaceBuildFailed
from provisioner.models.events import TenantMeta
from provisioner.models.job import ResourceHandle, ResourceKind
from provisioner.models.plan import UNLIMITED, PlanTier

logger = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).parent / "templates"

WORKSPACE_VERSION = "1.0.0"

# Directories created in every workspace, relative to its root.
WORKSPACE_DIRS: tuple[str, ...] = (
    "memory",
    "memory/people",
    "memory/projects",
    "skills",
    "config",
    "logs",
    "attachments",
)

# Markdown documents rendered at the workspace root: output name -> template.
_DOCUMENTS: dict[str, str] = {
    "SOUL.md": "SOUL.md.j2",
    "USER.md": "USER.md.j2",
    "AGENTS.md": "AGENTS.md.j2",
    "TOOLS.md": "TOOLS.md.j2",
    "HEARTBEAT.md": "HEARTBEAT.md.j2",
    "MEMORY.md": "MEMORY.md.j2",
}

_CAPABILITIES: dict[str, str] = {
    "chat": "Natural conversation",
    "memory": "Long-term memory",
    "web_search": "Web search and research",
    "gmail": "Email management (Gmail)",
    "calendar": "Calendar integration",
    "browser": "Web browsing and automation",
    "slack": "Slack integration",
}

# Integrations tracked in STATE.json; all start disconnected.
_CONNECTIONS: tuple[str, ...] = ("gmail", "calendar", "slack")


def _template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATES_DIR)),
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
        autoescape=False,  # noqa: S701 - renders Markdown, not HTML
    )


def _format_limit(value: int) -> str:
    return "unlimited" if value == UNLIMITED else f"{value:,}"


def _capabilities(plan: PlanTier) -> list[str]:
    if plan.has_feature("all"):
        return list(_CAPABILITIES.values())
    return [_CAPABILITIES.get(feature, feature) for feature in plan.features]


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=False) + "\n", encoding="utf-8")


class WorkspaceBuilder:
    """Builds, archives, and discards tenant workspaces under *base_dir*.

    Parameters
    ----------
    base_dir:
        Root under which every tenant namespace lives.
    archive_dir:
        Where deprovisioned workspaces are moved.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        base_dir: Path,
        archive_dir: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._base_dir = Path(base_dir)
        self._archive_dir = Path(archive_dir)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._env = _template_env()

    # -- Paths ---------------------------------------------------------------

    def path_for(self, tenant_id: str) -> Path:
        """Return the namespace path for *tenant_id* after validating it.

        Raises
        ------
        InvalidWorkspaceId
            If the id fails the allowlist or would resolve outside the base.
        """
        return self._contained(self._base_dir, tenant_id)

    def archive_path_for(self, tenant_id: str) -> Path:
        return self._contained(self._archive_dir, tenant_id)

    @staticmethod
    def _contained(root: Path, tenant_id: str) -> Path:
        validate_workspace_id(tenant_id)
        resolved_root = root.resolve()
        target = (resolved_root / tenant_id).resolve()
        if target.parent != resolved_root:
            raise InvalidWorkspaceId(f"Workspace path escapes {resolved_root}")
        return target

    # -- Public operations ---------------------------------------------------

    async def build(self, tenant_id: str, tenant_meta: TenantMeta, plan: PlanTier) -> ResourceHandle:
        """Render the workspace for *tenant_id* and move it into place.

        Raises
        ------
        WorkspaceBuildFailed
            On an invalid id, an existing namespace, or any render/write error.
        """
        try:
            final = self.path_for(tenant_id)
        except InvalidWorkspaceId as exc:
            raise WorkspaceBuildFailed(str(exc)) from exc

        await asyncio.to_thread(self._build_sync, tenant_id, final, tenant_meta, plan)
        logger.info("Built workspace %s (%s plan)", tenant_id, plan.name)
        return ResourceHandle(kind=ResourceKind.WORKSPACE, resource_id=tenant_id)

    async def discard(self, tenant_id: str) -> None:
        """Remove a workspace namespace.  A missing namespace is a no-op."""
        path = self.path_for(tenant_id)
        if not path.exists():
            return
        await asyncio.to_thread(shutil.rmtree, path)
        logger.info("Discarded workspace %s", tenant_id)

    async def archive(self, tenant_id: str) -> Path | None:
        """Move a workspace into the archive area.

        Returns the archive location, or ``None`` when there was never a
        workspace.  Re-running after a completed archive is a no-op that
        returns the existing archive location.
        """
        source = self.path_for(tenant_id)
        target = self.archive_path_for(tenant_id)
        return await asyncio.to_thread(self._archive_sync, tenant_id, source, target)

    async def delete_archive(self, tenant_id: str) -> None:
        target = self.archive_path_for(tenant_id)
        if target.exists():
            await asyncio.to_thread(shutil.rmtree, target)
            logger.info("Deleted archived workspace %s", tenant_id)

    async def refresh_skills(self, tenant_id: str, plan: PlanTier) -> None:
        """Rewrite the skill files of an existing workspace for *plan*."""
        root = self.path_for(tenant_id)
        if not root.is_dir():
            raise WorkspaceBuildFailed(f"Workspace {tenant_id} does not exist")
        try:
            await asyncio.to_thread(self._write_skills, root, plan, self._clock())
        except OSError as exc:
            raise WorkspaceBuildFailed(f"Could not refresh skills: {exc}") from exc
        logger.info("Refreshed skills for workspace %s (%s plan)", tenant_id, plan.name)

    # -- Internals -----------------------------------------------------------

    def _build_sync(self, tenant_id: str, final: Path, tenant_meta: TenantMeta, plan: PlanTier) -> None:
        if final.exists():
            raise WorkspaceBuildFailed(f"Workspace {tenant_id} already exists")

        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            # mkdtemp creates the directory with mode 0o700.
            staging = Path(tempfile.mkdtemp(prefix=f".{tenant_id}.", dir=final.parent))
        except OSError as exc:
            raise WorkspaceBuildFailed(f"Could not create staging area: {exc}") from exc

        try:
            self._render_into(staging, tenant_id, tenant_meta, plan)
            if final.exists():
                raise WorkspaceBuildFailed(f"Workspace {tenant_id} already exists")
            os.rename(staging, final)
        except (OSError, TemplateError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise WorkspaceBuildFailed(f"Workspace build failed: {type(exc).__name__}: {exc}") from exc
        except WorkspaceBuildFailed:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    def _render_into(self, root: Path, tenant_id: str, tenant_meta: TenantMeta, plan: PlanTier) -> None:
        now = self._clock()
        joined = tenant_meta.joined_at.date().isoformat()
        context: dict[str, Any] = {
            "workspace_id": tenant_id,
            "customer_email": tenant_meta.customer_email,
            "billing_customer_id": tenant_meta.billing_customer_id,
            "display_name": tenant_meta.customer_email.split("@", 1)[0],
            "joined": joined,
            "plan": plan,
            "message_limit": _format_limit(plan.message_limit),
            "agent_limit": _format_limit(plan.agent_limit),
            "capabilities": _capabilities(plan),
            "skills": plan.skills,
            "has_gmail": plan.has_feature("gmail"),
            "has_calendar": plan.has_feature("calendar"),
        }

        for directory in WORKSPACE_DIRS:
            (root / directory).mkdir(parents=True, exist_ok=True)

        for output, template_name in _DOCUMENTS.items():
            rendered = self._env.get_template(template_name).render(**context)
            (root / output).write_text(rendered, encoding="utf-8")

        daily_log = self._env.get_template("daily_log.md.j2").render(**context)
        (root / "memory" / f"{joined}.md").write_text(daily_log, encoding="utf-8")

        _write_json(
            root / "STATE.json",
            {
                "workspaceId": tenant_id,
                "plan": plan.name,
                "limits": {
                    "messagesPerMonth": plan.message_limit,
                    "maxAgents": plan.agent_limit,
                },
                "usage": {"messagesSent": 0, "lastReset": now.isoformat()},
                "connections": {name: False for name in _CONNECTIONS},
                "lastUpdated": now.isoformat(),
                "version": WORKSPACE_VERSION,
            },
        )
        self._write_skills(root, plan, now)

    @staticmethod
    def _write_skills(root: Path, plan: PlanTier, now: datetime) -> None:
        skills_dir = root / "skills"
        skills_dir.mkdir(parents=True, exist_ok=True)
        wanted = set(plan.skills)

        for existing in skills_dir.glob("*.json"):
            if existing.name != "manifest.json" and existing.stem not in wanted:
                existing.unlink()

        for skill in plan.skills:
            _write_json(
                skills_dir / f"{skill}.json",
                {"name": skill, "enabled": True, "installedAt": now.isoformat(), "config": {}},
            )

        _write_json(
            skills_dir / "manifest.json",
            {
                "installed": list(plan.features),
                "skills": plan.skills,
                "version": WORKSPACE_VERSION,
                "lastUpdated": now.isoformat(),
            },
        )

    def _archive_sync(self, tenant_id: str, source: Path, target: Path) -> Path | None:
        if not source.exists():
            if target.exists():
                logger.info("Workspace %s already archived", tenant_id)
                return target
            logger.info("Workspace %s has nothing to archive", tenant_id)
            return None

        self._archive_dir.mkdir(parents=True, exist_ok=True)
        if target.exists():
            stamp = self._clock().strftime("%Y%m%dT%H%M%S")
            target = target.with_name(f"{tenant_id}.{stamp}")
        shutil.move(str(source), str(target))
        logger.info("Archived workspace %s", tenant_id)
        return target
