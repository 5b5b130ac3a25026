"""RavenLoom knowledge core: scoped facts, Remember/Ask pipelines and escalation."""
