"""
Rulebook MCP Server - Model Context Protocol access to the playbook.

Exposes tools for fetching relevant rules, recording feedback, forgetting
bullets, applying deltas and validating proposed rules. Built with FastMCP.
"""

import asyncio
import logging
from typing import Any

from fastmcp import FastMCP

from rulebook.context import RulebookContext
from rulebook.core.serving import (
    check_deprecated_patterns,
    get_relevant_bullets,
    playbook_stats,
    stale_bullets,
)
from rulebook.core.storage.playbook_store import dump_playbook
from rulebook.pipeline import Pipeline
from rulebook.utils import utcnow

logger = logging.getLogger(__name__)


def create_server(ctx: RulebookContext, pipeline: Pipeline | None = None) -> FastMCP:
    """Build an MCP server bound to one open rulebook context."""
    mcp = FastMCP("Rulebook Playbook Server")
    pipeline = pipeline or Pipeline(ctx)

    @mcp.tool()
    async def status() -> dict:
        """
        Health check endpoint.

        Returns:
            dict: Status response indicating server is operational
        """
        return {"status": "ok", "playbook": str(ctx.store.path), "exists": ctx.store.exists()}

    @mcp.tool()
    async def context(task: str, top_k: int = 10) -> dict:
        """
        Fetch the live bullets most relevant to a task, plus deprecated-pattern warnings.

        Args:
            task: Description of the task about to be worked on
            top_k: Maximum number of bullets to return
        """
        try:
            playbook = ctx.store.load()
            ranked = get_relevant_bullets(playbook, task, ctx.config.scoring, utcnow(), top_k)
            warnings = check_deprecated_patterns(playbook.deprecated_patterns, task)
            return {
                "bullets": [s.to_dict() for s in ranked],
                "warnings": [
                    {"pattern": w.pattern, "reason": w.reason, "replacement": w.replacement}
                    for w in warnings
                ],
            }
        except Exception as e:
            return {"error": str(e)}

    @mcp.tool()
    async def mark(
        bullet_id: str,
        helpful: bool,
        reason: str | None = None,
        context: str | None = None,
        session: str | None = None,
    ) -> dict:
        """
        Record helpful or harmful feedback on a bullet.

        Args:
            bullet_id: Bullet to mark
            helpful: True for helpful, False for harmful
            reason: Harmful reason code (caused_bug, wasted_time, ...)
            context: Free-text note about the situation
            session: Session path, used to ignore repeated marks from one session
        """
        try:
            result = await asyncio.to_thread(
                pipeline.mark, bullet_id, helpful,
                reason=reason, context=context, session=session,  # type: ignore[arg-type]
            )
            return {"success": result.applied == 1, **result.summary()}
        except Exception as e:
            return {"success": False, "error": str(e)}

    @mcp.tool()
    async def forget(bullet_id: str, reason: str) -> dict:
        """
        Deprecate a bullet and add it to the blocked log.
        """
        try:
            entry = await asyncio.to_thread(pipeline.forget, bullet_id, reason)
            return {"success": True, "id": entry.id}
        except Exception as e:
            return {"success": False, "error": str(e)}

    @mcp.tool()
    async def curate(deltas: list[dict[str, Any]]) -> dict:
        """
        Apply a batch of playbook deltas.

        Args:
            deltas: Delta objects, each with a "type" of add, helpful, harmful,
                    replace, deprecate or merge

        Returns:
            dict: Curation summary and the decision log
        """
        try:
            result = await asyncio.to_thread(pipeline.curate, deltas)  # type: ignore[arg-type]
            return {
                "success": True,
                **result.summary(),
                "decision_log": [e.model_dump(mode="json") for e in result.decision_log],
            }
        except Exception as e:
            return {"success": False, "error": str(e)}

    @mcp.tool()
    async def validate(rule: str) -> dict:
        """
        Check a proposed rule against historical session evidence.
        """
        try:
            outcome = await asyncio.to_thread(pipeline.validate, rule)
            return {
                "verdict": outcome.verdict,
                "confidence": outcome.confidence,
                "reason": outcome.reason,
                "refined_rule": outcome.refined_rule,
                "success_count": outcome.gate.success_count,
                "failure_count": outcome.gate.failure_count,
            }
        except Exception as e:
            return {"error": str(e)}

    @mcp.tool()
    async def stats() -> dict:
        """
        Playbook statistics: counts by maturity and state, and the top bullets.
        """
        return playbook_stats(ctx.store.load(), ctx.config.scoring, utcnow())

    @mcp.tool()
    async def stale(days: int | None = None) -> dict:
        """
        List live bullets with no feedback within the window, stalest first.

        Args:
            days: Window in days; defaults to curation.stale_days
        """
        window = days if days is not None else ctx.config.curation.stale_days
        found = stale_bullets(ctx.store.load(), ctx.config.scoring, utcnow(), window)
        return {"days": window, "bullets": [s.to_dict() for s in found]}

    @mcp.tool()
    async def similar(text: str, is_negative: bool = False, category: str | None = None) -> dict:
        """
        Check a candidate rule for duplicates of, or conflicts with, stored bullets.
        """
        try:
            result = await asyncio.to_thread(
                ctx.similarity.check, text, ctx.store.load().bullets,
                is_negative=is_negative, category=category,
            )
            return {
                "verdict": result.verdict,
                "match_id": result.match_id,
                "similarity": result.similarity,
                "tier": result.tier,
            }
        except Exception as e:
            return {"error": str(e)}

    @mcp.resource("playbook://json")
    async def get_playbook_json() -> str:
        """
        Returns the full playbook document as JSON.
        """
        return dump_playbook(ctx.store.load())

    return mcp


def main() -> None:
    """
    Entry point for running the MCP server.

    Usage:
        python -m rulebook.mcp.server
    """
    ctx = RulebookContext.open()
    server = create_server(ctx)
    try:
        if ctx.config.mcp.transport == "stdio":
            server.run(transport="stdio")
        else:
            server.run(transport=ctx.config.mcp.transport, port=ctx.config.mcp.port)
    finally:
        ctx.close()


if __name__ == "__main__":
    main()
