from ssi_demo.helpers.account import AccountHelperConfig, AccountSignupHelper
from ssi_demo.helpers.base import ProofHelper, SignupHelper
from ssi_demo.helpers.file_helper import FileProofHelper, NullProofHelper
from ssi_demo.helpers.responder import ConnectionResponder, create_invitation

__all__ = [
    "AccountHelperConfig",
    "AccountSignupHelper",
    "ConnectionResponder",
    "FileProofHelper",
    "NullProofHelper",
    "ProofHelper",
    "SignupHelper",
    "create_invitation",
]
