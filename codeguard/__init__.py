"""
codeguard: access code issuance and validation with adaptive rate limiting
and a behavioral audit trail.

    from codeguard import SecurityContext

    with SecurityContext.create() as context:
        issued = context.codes.issue_code("ORG1", "standard")
        result = context.codes.validate_code(issued.raw_code, "ORG1")
"""

from codeguard.context import SecurityContext

__version__ = "0.1.0"

__all__ = ["SecurityContext", "__version__"]
