from __future__ import annotations

# Hex color stops for each named palette, low → high.
BINARY_PALETTE: tuple[str, ...] = ("212121", "B3E5FC")
RAINBOW_PALETTE: tuple[str, ...] = ("3949AB", "81D4FA", "66BB6A", "FFE082", "E53935")
IRON_PALETTE: tuple[str, ...] = ("00000A", "91009C", "E64616", "FEB400", "FFFFF6")
SUNLIGHT_PALETTE: tuple[str, ...] = ("212121", "FFCA28")

LUT_SIZE = 256

MONTHS_PER_YEAR = 12
HOURS_PER_DAY = 24

LAYER_PRESETS: dict[str, dict] = {
    "mask": {
        "label": "Roof mask",
        "filename": "mask.tif",
    },
    "dsm": {
        "label": "Digital Surface Model (DSM)",
        "filename": "dsm.tif",
    },
    "rgb": {
        "label": "Aerial image (RGB)",
        "filename": "rgb.tif",
    },
    "annualFlux": {
        "label": "Annual sunshine (flux)",
        "filename": "annualFlux.tif",
    },
    "monthlyFlux": {
        "label": "Monthly sunshine (flux)",
        "filename": "monthlyFlux.tif",
    },
    "hourlyShade": {
        "label": "Hourly shade",
        "dirname": "hourlyShade",
    },
}
