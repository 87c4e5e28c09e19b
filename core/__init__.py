# Core package - foundational components
#
# Modules:
# - config: Application settings
# - logging: Structured logging
# - exceptions: Event store error taxonomy
# - context: Process-wide wiring built once at startup
# - storage: Pluggable storage backends (PostgreSQL, ClickHouse)
