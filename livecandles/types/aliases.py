# -------- Aliases (clarify intent) --------
UnixMillis = int
Symbol = str
Interval = str  # e.g., "1m","5m","1h","1d"
