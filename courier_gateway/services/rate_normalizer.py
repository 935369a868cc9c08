"""
Rate normalization: one itemized ShipmentQuote shape for every carrier,
whether priced from a static rate card or a carrier's live rating API.

All money is Decimal, rounded half-up to 2 places. Weights are kg.

    volumetric  = L x W x H / dimensional_factor
    chargeable  = max(actual, volumetric, min_billable)
    multiplier  = max(1, ceil(chargeable / billing_unit))
    shipping    = base + addl x (multiplier - 1)
    rto         = rto_rate x multiplier              (only when requested)
    cod         = max(fixed fee, cod_percent% x collectible)   (COD only)
    gst         = gst_rate x (shipping + rto + cod)
    total       = shipping + rto + cod + gst
"""
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from courier_gateway.core.exceptions import ValidationFailed
from courier_gateway.models.shipment import (
    Dimensions,
    LiveRate,
    PaymentType,
    RateCard,
    ShipmentQuote,
    Zone,
)

Number = Union[int, float, str, Decimal]

TWO_PLACES = Decimal("0.01")
WEIGHT_PLACES = Decimal("0.001")
GST_RATE = Decimal("0.18")
DEFAULT_DIMENSIONAL_FACTOR = 5000
DEFAULT_BILLING_UNIT = Decimal("0.5")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Number) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def volumetric_weight(dimensions: Dimensions, dimensional_factor: int = DEFAULT_DIMENSIONAL_FACTOR) -> Decimal:
    """Unrounded L x W x H / factor, so it grows strictly with each side."""
    if dimensional_factor <= 0:
        raise ValidationFailed("Dimensional factor must be positive")
    if min(dimensions.length, dimensions.width, dimensions.height) < 0:
        raise ValidationFailed("Dimensions cannot be negative", details={"dimensions": vars(dimensions)})
    volume = to_decimal(dimensions.length) * to_decimal(dimensions.width) * to_decimal(dimensions.height)
    return volume / Decimal(dimensional_factor)


def chargeable_weight(actual: Number, volumetric: Number, min_billable: Number = 0) -> Decimal:
    return max(to_decimal(actual), to_decimal(volumetric), to_decimal(min_billable))


def weight_multiplier(chargeable: Number, billing_unit: Number = DEFAULT_BILLING_UNIT) -> int:
    unit = to_decimal(billing_unit)
    if unit <= 0:
        raise ValidationFailed("Billing unit must be positive")
    slabs = (to_decimal(chargeable) / unit).to_integral_value(rounding=ROUND_CEILING)
    return max(1, int(slabs))


def cod_charge(
    payment_type: PaymentType,
    collectible_amount: Number,
    cod_fee: Number,
    cod_percent: Number,
) -> Decimal:
    """
    Larger of the fixed fee and the percentage of the collectible amount.

    Zero for prepaid shipments or when neither component is configured.
    """
    if payment_type != PaymentType.COD:
        return Decimal("0.00")

    fee = to_decimal(cod_fee)
    percent = to_decimal(cod_percent)
    collectible = to_decimal(collectible_amount)

    candidates = []
    if fee > 0:
        candidates.append(fee)
    if percent > 0 and collectible > 0:
        candidates.append(collectible * percent / Decimal("100"))
    return money(max(candidates)) if candidates else Decimal("0.00")


def validate_weight(weight: Number) -> Decimal:
    """Parse a weight in kg; NaN, infinities and non-positive values are rejected."""
    try:
        actual = to_decimal(weight)
    except InvalidOperation:
        raise ValidationFailed("Weight must be a number", details={"weight": str(weight)}) from None
    if not actual.is_finite():
        raise ValidationFailed("Weight must be a finite number", details={"weight": str(weight)})
    if actual <= 0:
        raise ValidationFailed("Weight must be greater than 0", details={"weight": str(actual)})
    return actual


def compute_quote(
    zone: Zone,
    weight: Number,
    dimensions: Dimensions,
    payment_type: PaymentType,
    collectible_amount: Number,
    rate_card: RateCard,
    include_rto: bool = False,
    gst_rate: Number = GST_RATE,
) -> ShipmentQuote:
    """Price one rate card for one shipment."""
    actual = validate_weight(weight)
    volumetric = volumetric_weight(dimensions, rate_card.dimensional_factor)
    chargeable = chargeable_weight(actual, volumetric, rate_card.min_billable_weight)
    multiplier = weight_multiplier(chargeable, rate_card.billing_unit)

    base = money(rate_card.base_rate)
    additional = money(to_decimal(rate_card.addl_rate) * (multiplier - 1))
    shipping = base + additional
    rto = money(to_decimal(rate_card.rto_rate) * multiplier) if include_rto else Decimal("0.00")
    cod = cod_charge(payment_type, collectible_amount, rate_card.cod_fee, rate_card.cod_percent)
    gst = money((shipping + rto + cod) * to_decimal(gst_rate))

    return ShipmentQuote(
        carrier=rate_card.carrier,
        service_name=rate_card.service_name,
        zone=zone,
        actual_weight=actual,
        volumetric_weight=volumetric.quantize(WEIGHT_PLACES, rounding=ROUND_HALF_UP),
        chargeable_weight=chargeable.quantize(WEIGHT_PLACES, rounding=ROUND_HALF_UP),
        weight_multiplier=multiplier,
        base_rate=base,
        additional_charge=additional,
        shipping_cost=shipping,
        cod_charge=cod,
        rto_charge=rto,
        gst=gst,
        total=shipping + rto + cod + gst,
    )


def quote_from_live_rate(
    carrier,
    zone: Zone,
    weight: Number,
    dimensions: Dimensions,
    payment_type: PaymentType,
    live_rate: LiveRate,
    include_rto: bool = False,
    gst_rate: Number = GST_RATE,
    dimensional_factor: int = DEFAULT_DIMENSIONAL_FACTOR,
    billing_unit: Number = DEFAULT_BILLING_UNIT,
) -> ShipmentQuote:
    """
    Fold a carrier-priced LiveRate into the same itemized shape.

    The carrier's freight is the shipping cost; GST is taken from the
    carrier when it reports one, otherwise computed at gst_rate.
    """
    actual = validate_weight(weight)
    volumetric = volumetric_weight(dimensions, dimensional_factor)
    chargeable = chargeable_weight(actual, volumetric)
    multiplier = weight_multiplier(chargeable, billing_unit)

    shipping = money(live_rate.freight)
    rto = money(live_rate.rto_charge) if include_rto else Decimal("0.00")
    cod = money(live_rate.cod_charge) if payment_type == PaymentType.COD else Decimal("0.00")
    if live_rate.gst is not None:
        gst = money(live_rate.gst)
    else:
        gst = money((shipping + rto + cod) * to_decimal(gst_rate))

    return ShipmentQuote(
        carrier=carrier,
        service_name=live_rate.service_name,
        zone=zone,
        actual_weight=actual,
        volumetric_weight=volumetric.quantize(WEIGHT_PLACES, rounding=ROUND_HALF_UP),
        chargeable_weight=chargeable.quantize(WEIGHT_PLACES, rounding=ROUND_HALF_UP),
        weight_multiplier=multiplier,
        base_rate=shipping,
        additional_charge=Decimal("0.00"),
        shipping_cost=shipping,
        cod_charge=cod,
        rto_charge=rto,
        gst=gst,
        total=shipping + rto + cod + gst,
        live_rate=True,
    )
