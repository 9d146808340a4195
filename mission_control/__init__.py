"""
Mission Control edge service.

Domain-routed JSON endpoints fronted by an operational resilience layer:
admission control, signed deployment telemetry with canary routing, and
heartbeat monitoring with incident escalation.
"""
__version__ = "0.3.0"
