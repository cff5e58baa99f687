"""
Measurement Service Package — operation policies and the interceptor.
"""

from services.measurement_service.interceptor import InterceptedProxy, Interceptor
from services.measurement_service.policy import (
    POLICY_ATTR,
    OperationPolicy,
    measure_time,
    policy_of,
)

__all__ = [
    "InterceptedProxy",
    "Interceptor",
    "OperationPolicy",
    "POLICY_ATTR",
    "measure_time",
    "policy_of",
]
