"""
Secure artifact acquisition — verified downloads for feature installers.

Public API:
    pipeline.FetchPipeline.from_config(config)   → wired pipeline
    pipeline.acquire(tool, spec)                 → ``with`` → VerifiedArtifact
    engine.DownloadAndVerifyEngine.fetch(req)    → ``with`` → VerifiedArtifact
    provenance.ChecksumProvenanceResolver        → ChecksumRecord (GPG > Pinned > Published > Computed)
    versions.VersionResolver.resolve(req)        → ResolvedVersion
    handoff.install_to / extract                 → only with a VerifiedArtifact

Extension points:
    published.register_fetcher(name)   Published-tier strategies
    versions.register_source(name)     version listing strategies

Failures are ``errors.FetchError`` subclasses with a stable ``code``
and ``exit_code``.
"""
