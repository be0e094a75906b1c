HOST = "127.0.0.1"

# largest payload a single UDP datagram can carry over IPv4
BUFFER_SIZE = 65507

# requests per submitted datagram; keeps a batch well under BUFFER_SIZE
MAX_BATCH_SIZE = 512

# Control datagrams (compared byte for byte)
TOKEN = b"token"
CHECK = b"check"
OK = b"ok"

# Result sentinels
DIVISION_BY_ZERO = "Division by zero"
INVALID_OPERATION = "Invalid operation"

# Request generation: events per minute
EVENT_RATE = 4.0

# seconds
POLL_INTERVAL = 0.1
REPLY_TIMEOUT = 2.0
CHECK_TIMEOUT = 1.0

# Syslog mirror
SYSLOG_ENABLED = False
SYSLOG_HOST = "127.0.0.1"
SYSLOG_PORT = 5514
SYSLOG_FACILITY = 16  # local0
SYSLOG_APP = "token-ring"
