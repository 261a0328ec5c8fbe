"""Celery tasks — batch certification entry point."""

from __future__ import annotations

import asyncio
import logging
import traceback
import uuid
from typing import Any

from hydra.pipeline import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Helper to run async code in sync Celery tasks."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def load_batch(request: dict[str, Any]) -> list:
    """Modules named by a certification request.

    ``sources`` lists Move files or package directories, ``manifests`` lists
    compiled-module manifests (files or directories).
    """
    from hydra.analyzer.model import struct_table
    from hydra.analyzer.move.move_parser import parse_move_package
    from hydra.ingestion.manifest import load_manifests

    modules = []
    for path in request.get("sources", []):
        modules.extend(parse_move_package(path))

    known = struct_table(modules)
    for path in request.get("manifests", []):
        modules.extend(load_manifests(path, known))
    return modules


async def _certify(request: dict[str, Any], task: Any) -> dict[str, Any]:
    from hydra.core.config import get_settings
    from hydra.core.types import exit_code
    from hydra.decompiler.guard import DecompilationContext
    from hydra.pipeline.orchestrator import CertificationOrchestrator
    from hydra.verifier.oracle import StaticOracle

    settings = get_settings()
    modules = load_batch(request)
    oracle = StaticOracle(request.get("verdicts", {}))
    decompilation = DecompilationContext.for_run(settings) if settings.mad.enabled else None
    orchestrator = CertificationOrchestrator(oracle, settings, decompilation)
    try:
        report = await orchestrator.certify(modules, batch_id=request.get("batch_id"), task=task)
    finally:
        if decompilation is not None:
            await decompilation.close()
    return {
        "report": report.model_dump(mode="json"),
        "exit_code": exit_code(report, settings),
    }


@celery_app.task(bind=True, name="hydra.pipeline.tasks.certify_batch")
def certify_batch(self, request: dict[str, Any]) -> dict:
    """Certify a batch of Move modules.

    Pipeline:
    1. Load Move sources and compiled-module manifests
    2. Escape analysis (first pass)
    3. Selective decompilation of uncertain modules
    4. Escape analysis (second pass)
    5. Merge oracle verdicts and aggregate the report
    """
    from hydra.core.logging import batch_context

    batch_id = request.get("batch_id") or self.request.id or uuid.uuid4().hex
    request = {**request, "batch_id": batch_id}
    self.update_state(state="STARTED", meta={"step": "initializing"})

    with batch_context(batch_id):
        try:
            return _run_async(_certify(request, self))
        except Exception as e:
            logger.exception("Batch certification failed")
            self.update_state(state="FAILURE", meta={"error": str(e), "traceback": traceback.format_exc()})
            raise
