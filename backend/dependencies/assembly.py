from rq import Queue

from operators.assembly_operator import AssemblyOrchestrator
from redis_client import rq_queue


def get_orchestrator() -> AssemblyOrchestrator:
    # One orchestrator per request; sandbox sessions are created per call.
    return AssemblyOrchestrator()


def get_queue() -> Queue:
    return rq_queue
