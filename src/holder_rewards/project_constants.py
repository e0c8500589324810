"""
Project-wide parameters for the holder reward distribution.

These values define who takes part in a distribution and what is paid out.
Changing them changes eligibility and should be announced to holders.
"""

# Token whose holders are snapshotted (MAINNET)
SNAPSHOT_MINT = "WXsX5HSoVquYRGuJXJrCSogT1M6nZiPRrfZhQsPcXAU"

# Token that is paid out (MAINNET)
DISTRIBUTION_MINT = "GoLDppdjB1vDTPSGxyMJFqdnj134yH6Prg9eqsGDiw6A"

# Spell program holding per-user rune balances and buff multipliers
SPELL_PROGRAM_ID = "6MBt6Gh2GwmijsBgYkANFDge335dsekwFCRK3WUALCH"

# Known AMM / pool program ids; never receive a share
AMM_PROGRAMS = frozenset(
    {
        "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C",  # Raydium CPMM
        "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",  # Raydium AMM V4
        "HyaB3W9q6XdA5xwpU4XnSZV94htfmbmqJXZcEbRaJutt",  # Orca Whirlpool
        "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",  # Orca Whirlpool
        "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK",  # Kamino
        "DjVE6JNiYqPL2QXyCUUh8rNjHrbz9hXHNYt99MQ59qw1",  # Meteora DLMM
        "7Y9wjvR8nGmj4nPVSPBR2FJYCVdcNjLpLLNPH1dEjCRr",  # Meteora DAMM V1
        "Eo7WjKq67rjJQSZxS6z3YkapzY3eMj6Xy8X5EQVn5UaB",  # Meteora DAMM V2
        "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4",  # Jupiter
        "JUP4Fb2cqiRUcaTHdrPC8h2gNsA2ETXiPDD33WcGuJB",  # Jupiter V4
        "dynMpX7j1Ry59x4ePmWdDYQsxSPsUqUkphJwJxtF6zP",  # Meteora dynamic bonding curve
    }
)

# Addresses that never receive a distribution
BLACKLISTED_ADDRESSES = frozenset(
    {
        "HLnpSz9h2S4hiLQ43rnSD9XkcUThA7B8hQMKmDaiTLcC",
    }
)

# Optional extra exclusion list (one address per line)
EXCLUDED_WALLETS_FILE = "excluded_wallets.mainnet.txt"

# Cumulative distribution history
HISTORY_FILE = "distribution_history.json"

# Distribution token uses 6 decimals
TOKEN_DECIMALS = 6

# Skip the run unless the distributor holds more than this (raw units)
MIN_DISTRIBUTION_RAW = 300_000  # 0.3 tokens
