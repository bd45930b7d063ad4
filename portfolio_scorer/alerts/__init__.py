"""
Alert layer: opportunity and allocation-drift alerts.

Submodules:
  preferences: per-user switches and drift threshold (defaults on first read)
  service:     create / deduplicate / update / dismiss alerts, user reads
  detector:    nightly detection over scored users, auto-dismiss on investment
"""
