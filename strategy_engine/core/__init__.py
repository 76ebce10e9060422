"""
Core utilities: error taxonomy and unit conversions shared by the RPC
client, treasury signer, engines and API server.
"""
