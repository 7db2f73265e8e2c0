"""
MCP (Model Context Protocol) server for cortex-memory.

Exposes the MemoryManager as a set of tools so that an assistant can
archive its sessions and recall earlier context on its own.

Run as a stdio server:
    python -m cortex_memory.mcp_server

Or via the installed entry-point:
    cortex-mcp

Configuration (environment variables):
    CORTEX_DATA_DIR    - directory holding memory.db and config.json (default: ~/.cortex)
    CORTEX_MODEL_NAME  - sentence-transformers model (default: BAAI/bge-small-en-v1.5)
    CORTEX_LOG_LEVEL   - logging level (default: WARNING)
"""

from __future__ import annotations

import json
import logging
import sys

from mcp.server.fastmcp import FastMCP

from .archive import ArchiveAborted
from .config import Settings
from .embeddings import ProviderUnavailable
from .memory import MemoryManager

logger = logging.getLogger(__name__)

# Lazy-initialised singleton so the store and embedding model are opened once.
_manager: MemoryManager | None = None


def _get_manager() -> MemoryManager:
    global _manager
    if _manager is None:
        _manager = MemoryManager(settings=Settings())
    return _manager


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "cortex-memory",
    instructions=(
        "Long-term memory across coding sessions. "
        "Use `search_memories` at the start of a task or whenever earlier "
        "decisions, fixes or explanations might be relevant. "
        "Use `archive_transcript` before a session is compacted or ends. "
        "Use `save_memory` to store one specific fact or decision. "
        "Use `memory_stats` to see how much is stored."
    ),
)


@mcp.tool()
def search_memories(
    query: str,
    project_id: str | None = None,
    include_all_projects: bool = False,
    limit: int = 5,
) -> str:
    """
    Search stored memories with hybrid keyword + semantic ranking.

    Args:
        query:                Natural-language question or topic.
        project_id:           Restrict to this project plus global memories.
        include_all_projects: Search every project regardless of project_id.
        limit:                Maximum number of results (default 5).

    Returns:
        JSON array of results with id, score, content, source, timestamp
        and project_id, or a short message when nothing matches.
    """
    try:
        results = _get_manager().search(
            query,
            project_id=project_id,
            include_all_projects=include_all_projects,
            limit=limit,
        )
    except ProviderUnavailable as exc:
        return f"Embedding model unavailable: {exc.message}"
    if not results:
        return "No memories found."
    return json.dumps([r.to_dict() for r in results], indent=2)


@mcp.tool()
def archive_transcript(transcript_path: str, project_id: str | None = None) -> str:
    """
    Archive the valuable assistant output of a JSONL session transcript.

    Args:
        transcript_path: Path to the transcript file.
        project_id:      Project scope for the new memories (global if omitted).

    Returns:
        A summary of archived, skipped and duplicate fragments.
    """
    try:
        result = _get_manager().archive_session(transcript_path, project_id=project_id)
    except ArchiveAborted as exc:
        partial = exc.result
        return (
            f"Archive aborted: {exc}. "
            f"Archived {partial.archived} fragments before the failure."
        )
    return (
        f"Archived {result.archived} fragments "
        f"({result.skipped} skipped, {result.duplicates} duplicates)."
    )


@mcp.tool()
def save_memory(content: str, project_id: str | None = None) -> str:
    """
    Store one piece of text as a memory.

    Args:
        content:    The fact, decision or explanation to remember.
        project_id: Project scope (global if omitted).

    Returns:
        A confirmation message with the memory ID.
    """
    try:
        inserted = _get_manager().add(content, project_id=project_id)
    except ProviderUnavailable as exc:
        return f"Embedding model unavailable: {exc.message}"
    if inserted is None:
        return "Nothing to store."
    if inserted.is_duplicate:
        return f"Already stored as memory {inserted.id}."
    return f"Stored memory {inserted.id}."


@mcp.tool()
def memory_stats(project_id: str | None = None) -> str:
    """
    Report how many memories are stored.

    Args:
        project_id: Also report statistics for this project.

    Returns:
        JSON object with fragment, project and session counts.
    """
    manager = _get_manager()
    stats = manager.stats()
    payload: dict = {
        "fragment_count": stats.fragment_count,
        "project_count": stats.project_count,
        "session_count": stats.session_count,
        "db_size_bytes": stats.db_size_bytes,
    }
    if project_id:
        project = manager.project_stats(project_id)
        payload["project"] = {
            "id": project_id,
            "fragment_count": project.fragment_count,
            "session_count": project.session_count,
            "last_archive": project.last_archive.isoformat() if project.last_archive else None,
        }
    return json.dumps(payload, indent=2)


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
