from escrowload.client.base import RemoteServiceClient, ThreadedRemoteServiceClient
from escrowload.client.receipt import ErrorClass, Receipt
from escrowload.client.simulated import SimulatedEscrowClient

__all__ = [
    "ErrorClass",
    "Receipt",
    "RemoteServiceClient",
    "SimulatedEscrowClient",
    "ThreadedRemoteServiceClient",
]
