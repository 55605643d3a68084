"""
Deterministic keyword fallback for the retrieval pipeline.

Used when the model-generated query path is unavailable. Each intent is one row
of a declarative table: keywords that select it, a pattern that extracts the
entity the caller named, the parameterized query to run, and how to render rows.
Keywords are French with the English synonyms callers commonly use.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Optional

Row = dict[str, Any]

NO_INFORMATION_MESSAGE = "No specific database information found for this query."


@dataclass(frozen=True)
class FallbackIntent:
    """One keyword-routed lookup."""
    name: str
    keywords: tuple[str, ...]
    entity_pattern: re.Pattern[str]
    base_query: str
    filter_clause: str
    source: str
    header: str
    empty_message: str
    format_row: Callable[[Row], str]
    wildcard: bool = True

    def matches(self, normalized_query: str) -> bool:
        return any(keyword in normalized_query for keyword in self.keywords)

    def extract_entity(self, query: str) -> Optional[str]:
        match = self.entity_pattern.search(query)
        if not match:
            return None
        entity = match.group(1).strip()
        return entity or None

    def build_query(self, entity: Optional[str]) -> tuple[str, list[Any]]:
        if not entity:
            return self.base_query, []
        value = f"%{entity}%" if self.wildcard else entity
        return f"{self.base_query} {self.filter_clause}", [value]

    def render(self, rows: list[Row]) -> str:
        if not rows:
            return self.empty_message
        return self.header + "".join(self.format_row(row) for row in rows)


def format_date(value: Any) -> str:
    """Render a date the way French callers read it (dd/mm/yyyy)."""
    if value is None or value == "":
        return ""
    if isinstance(value, (date, datetime)):
        return value.strftime("%d/%m/%Y")
    try:
        return datetime.fromisoformat(str(value)).strftime("%d/%m/%Y")
    except ValueError:
        return str(value)


def _format_product(row: Row) -> str:
    available = row.get("Disponibilité")
    return (
        f"- Produit: {row.get('Designation')}\n"
        f"  Prix: {row.get('Tarif')} DH\n"
        f"  Disponibilité: {'En stock' if available else 'Rupture de stock'}\n\n"
    )


def _format_client(row: Row) -> str:
    return (
        f"- Client: {row.get('name')}\n"
        f"  Email: {row.get('email')}\n"
        f"  Montant total des factures: {row.get('montantfactures')} DH\n"
        f"  Statut: {'Bloqué' if row.get('IsBlocked') else 'Actif'}\n\n"
    )


def _format_invoice(row: Row) -> str:
    return (
        f"- N° Facture: {row.get('NumerFacture')}\n"
        f"  Client: {row.get('clientName')}\n"
        f"  Montant: {row.get('MontantFacture')} DH\n"
        f"  Date de facturation: {format_date(row.get('DateFacturation'))}\n"
        f"  Date d'échéance: {format_date(row.get('DateEcheance'))}\n"
        f"  Délai de paiement: {row.get('DelaiDePaiement')} jours\n\n"
    )


def _format_region(row: Row) -> str:
    return f"- ID: {row.get('Region_Id')}, Nom: {row.get('Region_Libelle')}\n"


INVOICE_QUERY = (
    "SELECT f.id, f.NumerFacture, f.MontantFacture, f.DelaiDePaiement, "
    "f.DateFacturation, f.DateEcheance, f.clientId, c.name AS clientName "
    "FROM factures f LEFT JOIN clients c ON f.clientId = c.id"
)

# Order matters: the first intent whose keywords match wins.
FALLBACK_INTENTS: tuple[FallbackIntent, ...] = (
    FallbackIntent(
        name="product",
        keywords=("ciment", "article", "produit", "prix"),
        entity_pattern=re.compile(r"(?:produit|article|ciment)\s+([a-zA-Z0-9\s]+)", re.IGNORECASE),
        base_query="SELECT * FROM ArticleCiments",
        filter_clause="WHERE Designation LIKE @productName",
        source="ArticleCiments",
        header="Voici les informations sur les produits ciments disponibles:\n\n",
        empty_message="Aucun produit trouvé correspondant à cette recherche.",
        format_row=_format_product,
    ),
    FallbackIntent(
        name="client",
        keywords=("client", "customer"),
        entity_pattern=re.compile(r"client\s+([a-zA-Z0-9\s]+)", re.IGNORECASE),
        base_query="SELECT * FROM clients",
        filter_clause="WHERE name LIKE @clientName",
        source="clients",
        header="Voici les informations sur les clients:\n\n",
        empty_message="Aucun client trouvé correspondant à cette recherche.",
        format_row=_format_client,
    ),
    FallbackIntent(
        name="invoice",
        keywords=("facture", "invoice", "payment"),
        entity_pattern=re.compile(r"facture\s+([a-zA-Z0-9-]+)", re.IGNORECASE),
        base_query=INVOICE_QUERY,
        filter_clause="WHERE f.NumerFacture = @invoiceNumber",
        source="factures",
        header="Voici les informations sur les factures:\n\n",
        empty_message="Aucune facture trouvée correspondant à cette recherche.",
        format_row=_format_invoice,
        wildcard=False,
    ),
    FallbackIntent(
        name="region",
        keywords=("region", "région", "zone"),
        entity_pattern=re.compile(r"r[eé]gion\s+([a-zA-Z0-9\s]+)", re.IGNORECASE),
        base_query="SELECT * FROM Region",
        filter_clause="WHERE Region_Libelle LIKE @regionName",
        source="Region",
        header="Voici les informations sur les régions:\n\n",
        empty_message="Aucune région trouvée correspondant à cette recherche.",
        format_row=_format_region,
    ),
)


def match_intent(
    query: str,
    intents: tuple[FallbackIntent, ...] = FALLBACK_INTENTS,
) -> Optional[FallbackIntent]:
    normalized = (query or "").lower()
    for intent in intents:
        if intent.matches(normalized):
            return intent
    return None
