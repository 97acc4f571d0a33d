"""Content-addressed versioning of the instruction documents given to the agent."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence
from pathlib import Path

from voice_listener.orchestrator.store import TaskStore

logger = logging.getLogger(__name__)

VERSION_ID_LENGTH = 12
DOCUMENT_SEPARATOR = "\n---\n"


def hash_instruction_documents(prompts_dir: Path, guideline_files: Sequence[Path] = ()) -> str:
    """SHA-256 over every prompt template plus the guideline documents that exist."""

    sections = [
        f"[prompts/{path.name}]\n{path.read_text('utf-8')}"
        for path in sorted(prompts_dir.glob("*.md"), key=lambda item: item.name)
    ]
    sections.extend(
        f"[{path.parent.name}/{path.name}]\n{path.read_text('utf-8')}"
        for path in guideline_files
        if path.is_file()
    )
    combined = DOCUMENT_SEPARATOR.join(sections)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


def to_version_id(content_hash: str) -> str:
    return content_hash[:VERSION_ID_LENGTH]


def load_prompt(prompts_dir: Path, name: str, variables: dict[str, str]) -> str:
    """Render `{{NAME}}` placeholders of one template."""

    text = (prompts_dir / f"{name}.md").read_text("utf-8")
    for key, value in variables.items():
        text = text.replace(f"{{{{{key}}}}}", value)
    return text


class PromptVersionTracker:
    """Get-or-create the version record for the current instructions, cached per process."""

    def __init__(
        self,
        *,
        store: TaskStore,
        prompts_dir: Path,
        guideline_files: Sequence[Path] = (),
    ) -> None:
        self.store = store
        self.prompts_dir = prompts_dir
        self.guideline_files = tuple(guideline_files)
        self._version_id: str | None = None

    @property
    def current_version_id(self) -> str | None:
        return self._version_id

    async def init(self) -> str:
        if self._version_id is not None:
            return self._version_id

        content_hash = hash_instruction_documents(self.prompts_dir, self.guideline_files)
        version_id = to_version_id(content_hash)
        existing = await self.store.find_prompt_version(version_id)
        if existing is None:
            await self.store.create_prompt_version(version=version_id, content_hash=content_hash)
            logger.info("Created new prompt version: %s", version_id)
        else:
            logger.info("Using existing prompt version: %s", version_id)
        self._version_id = version_id
        return version_id

    async def update_version_metrics(
        self,
        version_id: str,
        *,
        total_runs: int | None = None,
        avg_rating: float | None = None,
        success_rate: float | None = None,
    ) -> bool:
        """Attach offline quality metrics to a version record."""

        return await self.store.update_prompt_version_metrics(
            version_id,
            total_runs=total_runs,
            avg_rating=avg_rating,
            success_rate=success_rate,
        )
