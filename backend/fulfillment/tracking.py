"""Tracking URL derivation: provider URL → carrier template → generic page."""

CARRIER_TRACKING_TEMPLATES = {
    "usps": "https://tools.usps.com/go/TrackConfirmAction?qtc_tLabels1={tracking_number}",
    "ups": "https://www.ups.com/track?track=yes&trackNums={tracking_number}",
    "fedex": "https://www.fedex.com/fedextrack/?trknbr={tracking_number}",
    "dhl": "https://www.dhl.com/us-en/home/tracking.html?trackingNumber={tracking_number}",
}

GENERIC_TRACKING_TEMPLATE = "https://goshippo.com/track/{tracking_number}"

# Carrier names as they show up on rates ("DHL Express", "FedEx Ground", "dhl_ecommerce")
_CARRIER_PREFIXES = (
    ("usps", "usps"),
    ("ups", "ups"),
    ("fedex", "fedex"),
    ("dhl", "dhl"),
)


def normalize_carrier(carrier: str | None) -> str | None:
    name = (carrier or "").strip().lower().replace(" ", "").replace("_", "")
    for prefix, key in _CARRIER_PREFIXES:
        if name.startswith(prefix):
            return key
    return None


def derive_tracking_url(tracking_number: str, carrier: str | None = None, provider_url: str | None = None) -> str:
    """
    Always returns a URL for a non-empty tracking number.

    The provider's own URL wins; otherwise the carrier template; otherwise
    the provider-hosted generic tracking page.
    """
    if provider_url and provider_url.strip():
        return provider_url.strip()
    number = tracking_number.strip()
    template = CARRIER_TRACKING_TEMPLATES.get(normalize_carrier(carrier) or "", GENERIC_TRACKING_TEMPLATE)
    return template.format(tracking_number=number)
