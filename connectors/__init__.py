"""External system connectors.

- devpos: source system (fiscal e-invoices), password grant
- quickbooks: target system (QuickBooks Online), OAuth2 refresh-token grant

Clients take an aiohttp.ClientSession and explicit settings; nothing
company-specific is stored outside the credentials passed in.
"""
