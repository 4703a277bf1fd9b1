import httpx

from shared.helper.HelperConfig import HelperConfig
from shared.clients.backend.BackendClientInterface import BackendClientInterface


class BackendClientManager:
    """Manager class to instantiate the configured backend client."""

    def __init__(self, helper_config: HelperConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self._transport = transport
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        """Read the backend engine name from env configuration.

        Returns:
            str: Capitalised engine name (e.g. "Survey").
        """
        engine = self.helper_config.get_string_val("BACKEND_ENGINE", default="Survey")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> BackendClientInterface:
        """Instantiate the backend client for the configured engine.

        Returns:
            BackendClientInterface: The instantiated client.

        Raises:
            ValueError: If the engine is unsupported or cannot be imported.
        """
        engine = self._get_engine_from_env()
        class_name = f"BackendClient{engine}"
        try:
            module = __import__(
                f"shared.clients.backend.{engine.lower()}.{class_name}",
                fromlist=[class_name],
            )
            client_class = getattr(module, class_name)
            client = client_class(helper_config=self.helper_config, transport=self._transport)
            self.logging.debug("Instantiated backend client for engine: %s", engine)
            return client
        except (ImportError, AttributeError) as e:
            raise ValueError("Unsupported backend engine '%s'. Error: %s" % (engine, e))

    def get_client(self) -> BackendClientInterface:
        """Return the instantiated backend client."""
        return self.client
