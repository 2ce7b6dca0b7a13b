"""
This module prices waste pickups and converts the price into GreenCoins.

All functions here are pure: the same inputs always give the same outputs.
"""
import math
from typing import Dict, Union

from thefuzz import process

from .config import GREEN_COINS_PER_RUPEE, WASTE_TYPE_MATCH_CUTOFF
from .exceptions import InvalidInput
from .models import Estimate, WasteType

# Rupees paid per kilogram
RATE_PER_KG: Dict[WasteType, float] = {
    WasteType.PAPER: 8,
    WasteType.PLASTIC: 12,
    WasteType.METAL: 30,
    WasteType.E_WASTE: 25,
    WasteType.ORGANIC: 2,
    WasteType.MIXED: 5,
    WasteType.CARDBOARD: 10,
    WasteType.GLASS: 6,
}
DEFAULT_RATE_PER_KG = 5

# Spellings people actually type, mapped onto the canonical values
_ALIASES = {
    "ewaste": WasteType.E_WASTE,
    "e waste": WasteType.E_WASTE,
    "electronic": WasteType.E_WASTE,
    "electronics": WasteType.E_WASTE,
    "plastics": WasteType.PLASTIC,
    "metals": WasteType.METAL,
    "scrap metal": WasteType.METAL,
    "newspaper": WasteType.PAPER,
    "card board": WasteType.CARDBOARD,
    "bottles": WasteType.GLASS,
    "food waste": WasteType.ORGANIC,
    "compost": WasteType.ORGANIC,
}


def estimate(waste_type: Union[WasteType, str], quantity_kg: float) -> Estimate:
    """
    Computes the monetary value and GreenCoins for a quantity of waste.

    Args:
        waste_type: A WasteType, or any string. Strings that are not a known
            waste type are priced at the default rate.
        quantity_kg: Weight in kilograms, must be greater than zero.

    Returns:
        The Estimate (value in rupees, whole GreenCoins).

    Raises:
        InvalidInput: If quantity_kg is not a positive number.
    """
    if isinstance(quantity_kg, bool) or not isinstance(quantity_kg, (int, float)):
        raise InvalidInput(f"Quantity must be a number, got {quantity_kg!r}.")
    if not math.isfinite(quantity_kg) or quantity_kg <= 0:
        raise InvalidInput(f"Quantity must be greater than zero, got {quantity_kg}.")

    value = rate_for(waste_type) * quantity_kg
    return Estimate(value=value, green_coins=math.floor(value * GREEN_COINS_PER_RUPEE))


def rate_for(waste_type: Union[WasteType, str]) -> float:
    """Returns the per-kg rate, falling back to the default for unknown types."""
    try:
        return RATE_PER_KG[WasteType(waste_type)]
    except ValueError:
        return DEFAULT_RATE_PER_KG


def rate_card() -> Dict[str, float]:
    """Returns the published rate table keyed by waste type value."""
    return {waste_type.value: rate for waste_type, rate in RATE_PER_KG.items()}


def parse_waste_type(text: Union[WasteType, str]) -> WasteType:
    """
    Resolves user-supplied text to a WasteType.

    Tries the canonical value first, then known aliases, then falls back
    to fuzzy matching against the canonical values.

    Raises:
        InvalidInput: If nothing matches closely enough.
    """
    if isinstance(text, WasteType):
        return text
    if not isinstance(text, str) or not text.strip():
        raise InvalidInput("A waste type is required.")

    query = text.strip().lower()
    try:
        return WasteType(query)
    except ValueError:
        pass

    if query in _ALIASES:
        return _ALIASES[query]

    choices = [waste_type.value for waste_type in WasteType] + list(_ALIASES)
    match = process.extractOne(query, choices, score_cutoff=WASTE_TYPE_MATCH_CUTOFF)
    if not match:
        raise InvalidInput(f"Unknown waste type '{text}'.")

    best = match[0]
    return _ALIASES[best] if best in _ALIASES else WasteType(best)
