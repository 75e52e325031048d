"""Document mapping - DevPos documents to QuickBooks payloads.

Import from the submodules directly:

    from core.mapping.engine import map_to_target_invoice, map_to_target_bill
    from core.mapping.fields import INVOICE_DATE_FIELDS
"""
