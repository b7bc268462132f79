"""Canned Xero data for development environments.

Only wired in when ``XERO_DEMO_MODE`` is enabled; responses from the
controller are then flagged with ``is_demo_data``. Real Xero failures are
never answered with this data.
"""

from typing import Any, Dict, List, Optional
import copy
import logging

from .resource_fetcher import collection_key_for
from .tenant_resolver import Tenant

logger = logging.getLogger(__name__)

DEMO_TENANT = Tenant(tenant_id="00000000-0000-0000-0000-00000000demo", tenant_name="Demo Company (Global)", tenant_type="ORGANISATION")

DEMO_DOCUMENTS: Dict[str, List[dict]] = {
    "Invoices": [
        {"InvoiceID": "demo-inv-1", "InvoiceNumber": "INV-0001", "Type": "ACCREC", "Status": "PAID",
         "Contact": {"Name": "Ridgeway University"}, "Total": "1250.00", "AmountPaid": "1250.00", "AmountDue": "0.00"},
        {"InvoiceID": "demo-inv-2", "InvoiceNumber": "INV-0002", "Type": "ACCREC", "Status": "AUTHORISED",
         "Contact": {"Name": "City Agency"}, "Total": "830.50", "AmountPaid": "0.00", "AmountDue": "830.50"},
        {"InvoiceID": "demo-inv-3", "InvoiceNumber": "INV-0003", "Type": "ACCREC", "Status": "OVERDUE",
         "Contact": {"Name": "Marine Systems"}, "Total": "410.00", "AmountPaid": "100.00", "AmountDue": "310.00"},
        {"InvoiceID": "demo-inv-4", "InvoiceNumber": "INV-0004", "Type": "ACCREC", "Status": "DRAFT",
         "Contact": {"Name": "Bayside Club"}, "Total": "95.00", "AmountPaid": "0.00", "AmountDue": "95.00"},
    ],
    "Contacts": [
        {"ContactID": "demo-con-1", "Name": "Ridgeway University", "ContactStatus": "ACTIVE"},
        {"ContactID": "demo-con-2", "Name": "City Agency", "ContactStatus": "ACTIVE"},
        {"ContactID": "demo-con-3", "Name": "Marine Systems", "ContactStatus": "ACTIVE"},
        {"ContactID": "demo-con-4", "Name": "Bayside Club", "ContactStatus": "ACTIVE"},
    ],
    "Accounts": [
        {"AccountID": "demo-acc-1", "Code": "090", "Name": "Business Bank Account", "Type": "BANK"},
        {"AccountID": "demo-acc-2", "Code": "200", "Name": "Sales", "Type": "REVENUE"},
        {"AccountID": "demo-acc-3", "Code": "400", "Name": "Advertising", "Type": "EXPENSE"},
    ],
    "BankTransactions": [
        {"BankTransactionID": "demo-bt-1", "Type": "RECEIVE", "Status": "AUTHORISED", "Total": "1250.00"},
        {"BankTransactionID": "demo-bt-2", "Type": "SPEND", "Status": "AUTHORISED", "Total": "120.00"},
    ],
    "Organisations": [
        {"OrganisationID": "demo-org", "Name": "Demo Company (Global)", "BaseCurrency": "USD",
         "CountryCode": "US", "OrganisationType": "COMPANY"},
    ],
}


class DemoTenantResolver:
    """Stands in for TenantResolver; always offers the demo organisation."""

    def list_tenants(self, company_id: int, access_token: Optional[str] = None) -> List[Tenant]:
        return [DEMO_TENANT]

    def resolve(self, company_id: int, access_token: Optional[str] = None, hint: Optional[str] = None) -> str:
        if isinstance(hint, str) and hint.strip():
            return hint
        return DEMO_TENANT.tenant_id


class DemoResourceFetcher:
    """Stands in for ResourceFetcher; answers from DEMO_DOCUMENTS."""

    def fetch(
        self,
        company_id: int,
        tenant_id: str,
        resource_name: str,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = collection_key_for(resource_name)
        logger.debug(f"Serving demo {resource_name} for company {company_id}")
        return {key: copy.deepcopy(DEMO_DOCUMENTS.get(key, []))}
