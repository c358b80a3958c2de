"""HTTP API over the telemetry bridge."""
