import pytesseract
from PIL import Image

from shared.clients.ocr.OCRClientInterface import OCRClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig


class OCRClientTesseract(OCRClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.lang = self.get_config_val("LANG", default="eng", val_type="string")
        self.psm = self.get_config_val("PSM", default=3, val_type="number")

    def _get_engine_name(self) -> str:
        return "Tesseract"

    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="LANG", val_type="string", default="eng"),
            EnvConfig(env_key="PSM", val_type="number", default=3),
        ]

    def _extract_text(self, image: Image.Image) -> str:
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        text = pytesseract.image_to_string(image, lang=self.lang, config=f"--psm {int(self.psm)}")
        # drop the blank lines tesseract emits between blocks
        lines = [line.rstrip() for line in text.splitlines() if line.strip()]
        return "\n".join(lines)
