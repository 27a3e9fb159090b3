"""HTTP API for crowdpay."""
