"""
sii_dte — electronic tax documents for the Chilean tax authority (SII).

Stamps documents with authority-issued folio authorizations, signs them
and their envelopes with XML-DSIG, and delivers them through the
authority's seed/token web services.
"""

__version__ = "0.1.0"
