"""Which regulator hears about which product category."""

NAFDAC = "NAFDAC"
FIRS = "FIRS"
NAFDAC_COSMETICS = "NAFDAC-COSMETICS"
GENERIC_REGULATORY = "GENERIC-REGULATORY"

KNOWN_AGENCIES = (NAFDAC, FIRS, NAFDAC_COSMETICS)

_CATEGORY_ROUTES = {
    "drugs": NAFDAC,
    "drug": NAFDAC,
    "pharmaceuticals": NAFDAC,
    "food": FIRS,
    "cosmetics": NAFDAC_COSMETICS,
}


def get_regulatory_body(category: str | None) -> str:
    return _CATEGORY_ROUTES.get((category or "").strip().lower(), GENERIC_REGULATORY)
