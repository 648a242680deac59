"""USB device identity models."""

from typing import Optional

from pydantic import BaseModel, Field


def format_usb_id(value: int) -> str:
    """Format a vendor/product id as ``0xVVVV`` (upper-case hex)."""
    return f"0x{value:04X}"


def device_id_of(device) -> str:
    """Stable identifier for a USB device.

    The serial number when the device reports one, otherwise
    ``0xVVVV:0xPPPP`` built from vendor and product ids.
    """
    serial = getattr(device, "serial_number", None)
    if serial:
        return serial
    return f"{format_usb_id(device.vendor_id)}:{format_usb_id(device.product_id)}"


class FlashableDevice(BaseModel):
    """Enumerated device as exposed to callers."""

    id: str
    product_name: Optional[str] = Field(None, serialization_alias="productName")
    vendor_id: Optional[str] = Field(None, serialization_alias="vendorId")
    product_id: Optional[str] = Field(None, serialization_alias="productId")
    serial_number: Optional[str] = Field(None, serialization_alias="serialNumber")

    @classmethod
    def from_usb(cls, device) -> "FlashableDevice":
        vendor_id = getattr(device, "vendor_id", None)
        product_id = getattr(device, "product_id", None)
        return cls(
            id=device_id_of(device),
            product_name=getattr(device, "product_name", None),
            vendor_id=format_usb_id(vendor_id) if vendor_id is not None else None,
            product_id=format_usb_id(product_id) if product_id is not None else None,
            serial_number=getattr(device, "serial_number", None),
        )
