from shared.helper.HelperConfig import HelperConfig
from shared.clients.ocr.OCRClientInterface import OCRClientInterface


class OCRClientManager:
    """Manager class to instantiate the configured OCR engine."""

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        """Read the OCR engine name from env configuration (OCR_ENGINE, default "Tesseract")."""
        engine = self.helper_config.get_string_val("OCR_ENGINE", default="Tesseract")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> OCRClientInterface:
        """Instantiate the OCR client for the configured engine.

        Raises:
            ValueError: If the engine is unsupported or cannot be imported.
        """
        engine = self._get_engine_from_env()
        class_name = f"OCRClient{engine}"
        try:
            module = __import__(
                f"shared.clients.ocr.{engine.lower()}.{class_name}",
                fromlist=[class_name],
            )
            client_class = getattr(module, class_name)
            client = client_class(helper_config=self.helper_config)
            self.logging.debug("Instantiated OCR client for engine: %s", engine)
            return client
        except (ImportError, AttributeError) as e:
            raise ValueError("Unsupported OCR engine '%s'. Error: %s" % (engine, e))

    def get_client(self) -> OCRClientInterface:
        """Return the instantiated OCR client."""
        return self.client
