"""splat: single-host container orchestrator.

Turns per-application YAML definitions into running docker containers
fronted by an nginx reverse proxy:
 - one startup task per app (auth, pull, port, volumes, proxy route, container)
 - failure isolation: one broken app never blocks its siblings
 - signal/command driven control loop (status dump, reload, shutdown)
 - best-effort, total teardown on shutdown

The fleet is loaded once at start; there is no scheduling across hosts.
"""
