from shared.clients.backend.BackendClientInterface import BackendClientInterface
from shared.models.config import EnvConfig

DEFAULT_BASE_URL = "https://survey-khaki-chi.vercel.app/api"


class BackendClientSurvey(BackendClientInterface):
    def __init__(self, helper_config, transport=None):
        super().__init__(helper_config=helper_config, transport=transport)
        self._base_url = self.get_config_val("BASE_URL", default=DEFAULT_BASE_URL, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Survey"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=DEFAULT_BASE_URL),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        token = self._auth_token or self._api_key
        if token:
            return {"Authorization": f"Bearer {token}"}
        return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return ""

    def _get_endpoint_scan_upload(self) -> str:
        return "/mail-scan-upload"

    def _get_endpoint_process_package(self, mail_package_id: str) -> str:
        return f"/mail-package/{mail_package_id}/process"

    def _get_endpoint_update_package(self, mail_package_id: str) -> str:
        return f"/mail-package/{mail_package_id}"
