"""Exact extractor for CFDI XML invoices (tier XML_LOCAL, free).

Reads the fiscal XML directly, so there is nothing to guess: every field
present in the document gets confidence 1.0 and every missing required
field gets 0.0. Handles CFDI 3.3 and 4.0 by matching element local names,
independent of the namespace version.
"""

import logging
import xml.etree.ElementTree as ET
from decimal import Decimal
from typing import Any

from services.extraction.base import FieldExtractor
from services.extraction.schema import (
    REQUIRED_FIELDS,
    ExtractionAttempt,
    FieldValue,
    InvoiceField,
    LineItem,
    RawDocument,
    Tier,
)
from services.extraction.validators import (
    normalize_currency,
    normalize_folio,
    normalize_tax_id,
    parse_amount,
    parse_issue_date,
)
from services.shared.errors import MalformedInputError

logger = logging.getLogger(__name__)

_KNOWN_ROOT_ATTRIBUTES = {
    "Fecha",
    "SubTotal",
    "Descuento",
    "Total",
    "Moneda",
    "MetodoPago",
    "TipoDeComprobante",
}
_SKIPPED_ROOT_ATTRIBUTES = {"Sello", "Certificado", "NoCertificado", "schemaLocation"}


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _attributes(element: ET.Element) -> dict[str, str]:
    return {_local_name(name): value for name, value in element.attrib.items()}


def _child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local_name(child.tag) == name:
            return child
    return None


def _children(element: ET.Element | None, name: str) -> list[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _local_name(child.tag) == name]


class ExactExtractor(FieldExtractor):
    """Lossless CFDI XML extractor."""

    @property
    def tier(self) -> Tier:
        return Tier.XML_LOCAL

    def is_available(self) -> bool:
        return True

    def extract(self, document: RawDocument) -> ExtractionAttempt:
        """Parse the CFDI comprobante.

        Raises:
            MalformedInputError: If the XML is not well-formed or not a CFDI
        """
        try:
            root = ET.fromstring(document.content)
        except ET.ParseError as e:
            raise MalformedInputError(f"XML is not well-formed: {e}") from e

        if _local_name(root.tag) != "Comprobante":
            raise MalformedInputError(
                f"XML root is '{_local_name(root.tag)}', expected a CFDI Comprobante"
            )

        attrs = _attributes(root)
        issuer = _child(root, "Emisor")
        receiver = _child(root, "Receptor")
        issuer_attrs = _attributes(issuer) if issuer is not None else {}
        receiver_attrs = _attributes(receiver) if receiver is not None else {}

        subtotal = parse_amount(attrs.get("SubTotal"))
        discount = parse_amount(attrs.get("Descuento"))
        if subtotal is not None and discount:
            subtotal -= discount

        values: dict[InvoiceField, Any] = {
            InvoiceField.ISSUER_TAX_ID: normalize_tax_id(issuer_attrs.get("Rfc")),
            InvoiceField.RECEIVER_TAX_ID: normalize_tax_id(receiver_attrs.get("Rfc")),
            InvoiceField.UUID: self._stamp_uuid(root),
            InvoiceField.ISSUE_DATE: parse_issue_date(attrs.get("Fecha")),
            InvoiceField.SUBTOTAL: subtotal,
            InvoiceField.TAX: self._net_tax(root),
            InvoiceField.TOTAL: parse_amount(attrs.get("Total")),
            InvoiceField.CURRENCY: normalize_currency(attrs.get("Moneda")),
            InvoiceField.LINE_ITEMS: self._line_items(root),
            InvoiceField.ISSUER_NAME: issuer_attrs.get("Nombre") or None,
            InvoiceField.RECEIVER_NAME: receiver_attrs.get("Nombre") or None,
            InvoiceField.PAYMENT_METHOD: attrs.get("MetodoPago") or None,
            InvoiceField.INVOICE_TYPE: attrs.get("TipoDeComprobante") or None,
        }

        fields: dict[InvoiceField, FieldValue] = {}
        for field, value in values.items():
            if value not in (None, "", []):
                fields[field] = FieldValue(value=value, confidence=1.0)
            elif field in REQUIRED_FIELDS:
                fields[field] = FieldValue(value=None, confidence=0.0)

        missing = sorted(f.value for f in REQUIRED_FIELDS if not fields[f].present)
        if missing:
            logger.warning(f"CFDI {document.document_id} lacks required fields: {missing}")

        return ExtractionAttempt(
            tier=self.tier,
            fields=fields,
            success=True,
            auxiliary=self._auxiliary(attrs, issuer_attrs, receiver_attrs),
        )

    def _stamp_uuid(self, root: ET.Element) -> str | None:
        """UUID (folio fiscal) from the TimbreFiscalDigital complement."""
        for element in root.iter():
            if _local_name(element.tag) == "TimbreFiscalDigital":
                return normalize_folio(_attributes(element).get("UUID"))
        return None

    def _net_tax(self, root: ET.Element) -> Decimal:
        """Transferred minus withheld taxes at comprobante level.

        Uses the declared totals when present, otherwise sums the individual
        Traslado/Retencion entries. An invoice without an Impuestos node is
        tax exempt.
        """
        taxes = _child(root, "Impuestos")
        if taxes is None:
            return Decimal("0")
        attrs = _attributes(taxes)

        transferred = parse_amount(attrs.get("TotalImpuestosTrasladados"))
        if transferred is None:
            transferred = sum(
                (
                    parse_amount(_attributes(t).get("Importe")) or Decimal("0")
                    for t in _children(_child(taxes, "Traslados"), "Traslado")
                ),
                Decimal("0"),
            )

        withheld = parse_amount(attrs.get("TotalImpuestosRetenidos"))
        if withheld is None:
            withheld = sum(
                (
                    parse_amount(_attributes(r).get("Importe")) or Decimal("0")
                    for r in _children(_child(taxes, "Retenciones"), "Retencion")
                ),
                Decimal("0"),
            )

        return transferred - withheld

    def _line_items(self, root: ET.Element) -> list[LineItem]:
        items = []
        for concept in _children(_child(root, "Conceptos"), "Concepto"):
            attrs = _attributes(concept)
            items.append(
                LineItem(
                    description=attrs.get("Descripcion", ""),
                    quantity=parse_amount(attrs.get("Cantidad")) or Decimal("1"),
                    unit_value=parse_amount(attrs.get("ValorUnitario")),
                    amount=parse_amount(attrs.get("Importe")),
                    product_key=attrs.get("ClaveProdServ"),
                    unit_key=attrs.get("ClaveUnidad"),
                )
            )
        return items

    def _auxiliary(
        self,
        attrs: dict[str, str],
        issuer_attrs: dict[str, str],
        receiver_attrs: dict[str, str],
    ) -> dict[str, str]:
        auxiliary = {
            name: value
            for name, value in attrs.items()
            if name not in _KNOWN_ROOT_ATTRIBUTES and name not in _SKIPPED_ROOT_ATTRIBUTES
        }
        if issuer_attrs.get("RegimenFiscal"):
            auxiliary["RegimenFiscalEmisor"] = issuer_attrs["RegimenFiscal"]
        if receiver_attrs.get("UsoCFDI"):
            auxiliary["UsoCFDI"] = receiver_attrs["UsoCFDI"]
        return auxiliary
