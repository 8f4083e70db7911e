"""Test that all Python modules can be imported without circular dependency errors."""


def test_imports():
    """Test importing all dossier modules."""
    import dossier
    import dossier.base_types
    import dossier.cli
    import dossier.config
    import dossier.constants
    import dossier.database
    import dossier.dispatcher
    import dossier.exception
    import dossier.http
    import dossier.monitor
    import dossier.pipeline
    import dossier.progress
    import dossier.progress.cache
    import dossier.progress.store
    import dossier.progress.tables
    import dossier.queues
    import dossier.queues.sqlite
    import dossier.queues.tables
    import dossier.rate_limiter
    import dossier.stages
    import dossier.utils.hash
    import dossier.utils.id_generator
    import dossier.utils.logging_config
    import dossier.worker
    import dossier.worker.context
    import dossier.worker.pool
    import dossier.worker.stage_worker
    import dossier.workflow
    import dossier.workflow.aggregator
    import dossier.workflow.cleanup

    assert dossier.__version__
