import asyncio
from abc import ABC, abstractmethod
from typing import Any

from PIL import Image

from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.errors import OcrProcessingFailedError


class OCRClientInterface(ABC):
    """Text extractor for scanned mail pages. Engines run blocking OCR in a worker thread."""

    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self.timeout = helper_config.get_number_val("OCR_TIMEOUT", default=120.0)
        self.validate_full_configuration()

    ##########################################
    ############### CHECKER ##################
    ##########################################

    def validate_full_configuration(self) -> None:
        """
        Validates that all required configuration values for the engine are set and valid.

        Raises:
            ValueError: If any required configuration value is missing or invalid.
        """
        for config in self._get_required_config():
            _ = self.get_config_val(raw_key=config.env_key, default=config.default, val_type=config.val_type)

    ##########################################
    ################ GETTER ##################
    ##########################################

    def get_engine_name(self) -> str:
        """
        Returns the name of the OCR engine in lowercase. E.g. "tesseract"
        """
        return self._get_engine_name().lower()

    @abstractmethod
    def _get_engine_name(self) -> str:
        pass

    @abstractmethod
    def _get_required_config(self) -> list[EnvConfig]:
        pass

    def get_config_val(self, raw_key: str, default: Any = None, val_type: str = "string") -> Any:
        """
        Retrieves an engine setting, e.g. raw_key "LANG" reads OCR_TESSERACT_LANG.

        Args:
            raw_key (str): The raw configuration key name
            default (Any): The default value if the key is not set
            val_type (str): "string", "number" or "bool"
        """
        key = f"OCR_{self.get_engine_name().upper()}_{raw_key.upper()}"
        if val_type == "string":
            return self._helper_config.get_string_val(key, default=default)
        elif val_type == "number":
            return self._helper_config.get_number_val(key, default=default)
        elif val_type == "bool":
            return self._helper_config.get_bool_val(key, default=default)
        raise ValueError(f"Unsupported config value type '{val_type}' for env key '{raw_key}' in OCR engine '{self.get_engine_name()}'.")

    ##########################################
    ############## EXTRACTION ################
    ##########################################

    @abstractmethod
    def _extract_text(self, image: Image.Image) -> str:
        """Run the engine on one image. Called in a worker thread.

        Args:
            image (Image.Image): The scanned page.

        Returns:
            str: Recognised text, lines joined by newlines.
        """
        pass

    async def do_extract_text(self, image: Image.Image) -> str:
        """Extract the text of one scanned page.

        Args:
            image (Image.Image): The scanned page.

        Returns:
            str: The recognised text.

        Raises:
            OcrProcessingFailedError: If the engine fails or exceeds OCR_TIMEOUT.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._extract_text, image), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise OcrProcessingFailedError(f"timed out after {self.timeout}s") from e
        except OcrProcessingFailedError:
            raise
        except Exception as e:
            raise OcrProcessingFailedError(str(e)) from e
