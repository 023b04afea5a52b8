"""
Chunk-oriented batch engine.

    from cardbatch_engine.orchestrator import JobOrchestrator
    from cardbatch_jobs.registry import default_job_registry

    orchestrator = JobOrchestrator.from_settings(default_job_registry())
    execution = orchestrator.launch(
        "daily_posting", {"processing_date": date(2024, 1, 15), "input_file": path},
    )
"""
