# =============================================================================
# Resilience Package
# =============================================================================
#   - errors.py: exception hierarchy and the permanent/transient classifier
#   - backoff.py: exponential backoff and RetryPolicy
#   - retry.py: in-job retry loop through a circuit breaker
#   - circuit_breaker.py: per-dependency breakers and their registry
#   - health_check.py: dependency probes and breaker auto-reset
# =============================================================================
