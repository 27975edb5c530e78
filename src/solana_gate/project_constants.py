"""
Protocol-level constants for the token gate.

Program ids and encodings are fixed by the Solana runtime. The retry bounds
define how long a verification may wait on the ledger before giving up and
how hard a refund is retried before an operator has to step in.
"""

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

LAMPORTS_PER_SOL = 1_000_000_000

# Deposits in the address-watch flow are native SOL; the record still carries
# the governed token mint so claim uniqueness is scoped per token.
DEFAULT_DEPOSIT_LAMPORTS = 10_000_000  # 0.01 SOL

# Parsed-transaction fetch after a signature shows up (ledger indexing lag)
FETCH_ATTEMPTS = 6
FETCH_SPACING_S = 5.0

# Compensating transfer
REFUND_ATTEMPTS = 3
REFUND_BACKOFF_S = 2.0

# Commitment levels at which a signature counts as landed
SETTLED_STATUSES = ("confirmed", "finalized")

# Token account layout: Mint(0-32) | Owner(32-64) | Amount(64-72)
TOKEN_ACCOUNT_MIN_LEN = 72

# Stray deposit recovery leaves younger payments to the live verification
DEFAULT_RECOVERY_AGE_S = 1800.0
