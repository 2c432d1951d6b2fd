"""
Solar grabber package.

Polls Deye SUN600 microinverters through their Solarman V5 logger sticks,
decodes power and energy telemetry, and writes it to one or more InfluxDB
sinks. Runs once per invocation; scheduling is left to systemd or cron.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
