"""
API server package — HTTP interface over the engine runtime.

Exposes status snapshots, the treasury balance, manual settlement and
withdrawals. Delegates to the agent_worker runtime for all state.
"""
