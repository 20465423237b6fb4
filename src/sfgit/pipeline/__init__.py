"""Batch publishing pipeline.

Each work unit walks the same forward-only sequence:

    branch -> checkout -> retrieve -> stage -> commit -> push -> (pull request)

Usage::

    from sfgit.config import load_config
    from sfgit.log_sink import AuditLog
    from sfgit.pipeline import PipelineOrchestrator
    from sfgit.schemas import WorkUnit

    config = load_config("config.json")
    pipeline = PipelineOrchestrator(config, log=AuditLog(config.log_path))
    report = pipeline.run([WorkUnit.changeset("Change Set One")])
"""

from sfgit.pipeline.orchestrator import PipelineOrchestrator

__all__ = ["PipelineOrchestrator"]
