from app.models.rfp import RFP, RFPStatus, RFPVendor
from app.models.vendor import Vendor
from app.models.proposal import Proposal, ProposalStatus
from app.models.dispatch_event import DispatchEvent

__all__ = ["RFP", "RFPStatus", "RFPVendor", "Vendor", "Proposal", "ProposalStatus", "DispatchEvent"]
