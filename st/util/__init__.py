from .misc import now_ms, format_time, parse_time
