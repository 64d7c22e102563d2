# Services module

from docflow.services.line_computation import (
    ComputedLine,
    DocumentTotals,
    compute,
    fold_totals,
    reconcile_header_totals,
)
from docflow.services.pricing_resolver import (
    AncestorPricing,
    PricingContext,
    PricingSource,
    ResolvedPricing,
    register_priority,
    resolve,
)
from docflow.services.fulfillment_ledger import (
    FulfillmentEvent,
    FulfillmentLedgerService,
    LedgerBalance,
    LpoLineQuantity,
    SourceLine,
    remaining,
)
from docflow.services.number_generator import DocumentNumberGenerator, DocumentPrefix
from docflow.services.derivation_service import (
    DerivationResult,
    DocumentDerivationService,
    GroupBy,
    SourceKind,
    SourceRef,
)
from docflow.services.derived_document import DerivedDocument, TargetType
