"""Shared XML vocabulary for the documents package."""

from __future__ import annotations

from lxml import etree
from lxml.builder import ElementMaker

SII_NS = "http://www.sii.cl/SiiDte"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

E = ElementMaker(namespace=SII_NS, nsmap={None: SII_NS})


def sii(tag: str) -> str:
    return f"{{{SII_NS}}}{tag}"


def to_text(element: etree._Element) -> str:
    """Serialize without pretty printing; whitespace inside signed content matters."""
    return f"{XML_DECLARATION}\n{etree.tostring(element, encoding='unicode')}"
