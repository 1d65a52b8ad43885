from escrowload.identity.pool import Identity, IdentityPool, synthetic_address

__all__ = [
    "Identity",
    "IdentityPool",
    "synthetic_address",
]
