import math
import time


# Wall-clock time as integer epoch milliseconds. This is the clock every client compares timestamps with, so it
# has to be wall time and not monotonic.
def now_ms():
    return int(time.time() * 1000)


# Formats whole seconds as H:MM:SS, hours unpadded. Anything that isn't a finite, non-negative number shows as
# 0:00:00.
def format_time(seconds):
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return "0:00:00"
    if math.isnan(seconds) or math.isinf(seconds) or seconds < 0:
        return "0:00:00"
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"

# Reads one component of a typed time. Non-numeric or negative pieces count as zero.
def _parse_component(text):
    text = text.strip()
    if not text.isdecimal():
        return 0
    return int(text)

# Inverse of format_time, for whatever the user typed into the time field.
#   "H:MM:SS" -> hours, minutes, seconds
#   "MM:SS"   -> minutes, seconds
#   "M"       -> bare minutes
# With more than three components only the last three count. Never raises.
def parse_time(text):
    if not isinstance(text, str):
        return 0
    parts = [_parse_component(p) for p in text.strip().split(":")]
    if len(parts) >= 3:
        hours, minutes, seconds = parts[-3:]
        return hours * 3600 + minutes * 60 + seconds
    if len(parts) == 2:
        minutes, seconds = parts
        return minutes * 60 + seconds
    return parts[0] * 60
