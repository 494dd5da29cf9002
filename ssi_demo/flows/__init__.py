from ssi_demo.flows.base import (
    TERMINAL_STATES,
    CancelToken,
    ConnectionMethod,
    Flow,
    FlowContext,
    FlowStatus,
)
from ssi_demo.flows.issuance import IssuanceFlow
from ssi_demo.flows.login import LoginFlow
from ssi_demo.flows.manager import (
    FlowManager,
    IssuanceManager,
    LoginManager,
    SignupManager,
    parse_connection_method,
)
from ssi_demo.flows.signup import SignupFlow

__all__ = [
    "TERMINAL_STATES",
    "CancelToken",
    "ConnectionMethod",
    "Flow",
    "FlowContext",
    "FlowManager",
    "FlowStatus",
    "IssuanceFlow",
    "IssuanceManager",
    "LoginFlow",
    "LoginManager",
    "SignupFlow",
    "SignupManager",
    "parse_connection_method",
]
