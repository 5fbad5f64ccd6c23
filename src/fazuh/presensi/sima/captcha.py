import io
import re

from loguru import logger
from PIL import Image
import pytesseract

from fazuh.presensi.error import CaptchaParseError

# --psm 7: treat the image as a single text line
TESSERACT_CONFIG = "--oem 3 --psm 7"

_EXPRESSION = re.compile(r"(\d+)([+\-x])(\d+)")


def normalize(text: str) -> str:
    """Maps OCR confusions for multiplication to "x" and drops whitespace."""
    text = text.strip().replace("×", "x").replace("X", "x").replace("*", "x")
    return re.sub(r"\s+", "", text)


def calculate(a: int, operator: str, b: int) -> int:
    match operator:
        case "+":
            return a + b
        case "-":
            return a - b
        case "x":
            return a * b
        case _:
            raise CaptchaParseError(f"{a}{operator}{b}")


def parse_expression(text: str) -> int:
    """Evaluates the arithmetic CAPTCHA text produced by OCR.

    Tries `<digits><op><digits>` anywhere in the normalized text first, then a
    strict three-character `digit op digit` reading.

    Raises:
        CaptchaParseError: When neither pattern matches or the operator is unknown.
    """
    clean = normalize(text)

    match = _EXPRESSION.search(clean)
    if match:
        return calculate(int(match.group(1)), match.group(2), int(match.group(3)))

    if len(clean) == 3 and clean[0].isdigit() and clean[2].isdigit():
        return calculate(int(clean[0]), clean[1], int(clean[2]))

    raise CaptchaParseError(clean)


class CaptchaSolver:
    """Solves SIMA's arithmetic image CAPTCHA with Tesseract OCR."""

    def __init__(self, lang: str = "eng", tesseract_config: str = TESSERACT_CONFIG):
        self.lang = lang
        self.tesseract_config = tesseract_config

    def solve(self, image_data: bytes) -> int:
        try:
            image = Image.open(io.BytesIO(image_data))
        except OSError as e:
            raise CaptchaParseError("<unreadable image>") from e

        try:
            text = pytesseract.image_to_string(image, lang=self.lang, config=self.tesseract_config)
        except pytesseract.TesseractError as e:
            raise CaptchaParseError(f"<tesseract error: {e}>") from e
        logger.debug(f"CAPTCHA OCR result: {text.strip()!r}")
        return parse_expression(text)
