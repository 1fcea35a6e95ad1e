"""Liveness and readiness health probes."""