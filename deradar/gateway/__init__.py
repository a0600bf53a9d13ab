from deradar.gateway.resolver import (
    EndpointResolver,
    extract_gateway_domain,
    gateway_info,
    validate_gateway_domain,
)

__all__ = [
    "EndpointResolver",
    "extract_gateway_domain",
    "gateway_info",
    "validate_gateway_domain",
]
