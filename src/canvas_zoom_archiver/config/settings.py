import os
import pathlib
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load environment variables from .env file
# Try multiple paths to find .env file
project_root = pathlib.Path(__file__).parent.parent.parent.parent
env_paths = [
    project_root / ".env",
    pathlib.Path.cwd() / ".env",
]

for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=[str(p) for p in env_paths if p.exists()],
        case_sensitive=False,
        extra="ignore",  # Allow extra environment variables
    )

    # Host LMS and the LTI tool that embeds the video provider
    canvas_base_url: str = Field(default="https://<tenant>.instructure.com")
    external_tool_id: int = Field(default=187)
    sso_email: Optional[str] = Field(default=None)
    sso_password: Optional[str] = Field(default=None)

    zoom_base_url: str = Field(default="https://applications.zoom.us")
    user_agent: str = Field(
        default="Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )

    state_dir: str = Field(default="~/.config/canvas_zoom_archiver")
    database_url: Optional[str] = Field(default=None)
    download_root: str = Field(default="~/Documents/Canvas")

    ffmpeg_path: str = Field(default="ffmpeg")
    headless: bool = Field(default=True)
    debug: bool = Field(default=False)

    max_rps: float = Field(default=2.0)
    concurrency: int = Field(default=1)

    token_capture_timeout_seconds: float = Field(default=60.0)
    asset_capture_timeout_seconds: float = Field(default=30.0)
    sso_step_timeout_seconds: float = Field(default=15.0)
    http_timeout_seconds: float = Field(default=30.0)

    # Provider/tenant specific heuristics; JSON arrays when set from the environment
    header_prefixes: List[str] = Field(default_factory=lambda: ["x-zm-", "x-xsrf-token"])
    sso_button_phrases: List[str] = Field(
        default_factory=lambda: ["estudiantes y docentes", "single sign-on", "sso", "log in with"]
    )
    media_host_suffixes: List[str] = Field(default_factory=lambda: ["zoom.us", "cloudfront.net"])
    lti_bootstrap_pattern: str = Field(default="*applications.zoom.us/lti/advantage*")
    cookie_domain: str = Field(default="zoom.us")

    @property
    def state_path(self) -> pathlib.Path:
        return pathlib.Path(os.path.expanduser(self.state_dir))

    @property
    def download_path(self) -> pathlib.Path:
        return pathlib.Path(os.path.expanduser(self.download_root))

    @property
    def effective_database_url(self) -> str:
        """SQLite file inside the state directory unless DATABASE_URL overrides it."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.state_path / 'zoom_state.sqlite'}"

    def lti_launch_url(self, course_id: int) -> str:
        return f"{self.canvas_base_url.rstrip('/')}/courses/{course_id}/external_tools/{self.external_tool_id}"

    def missing_fields(self) -> List[str]:
        """Names of settings that must be filled before the browser flow can run."""
        missing = []
        if not self.canvas_base_url.strip() or "<tenant>" in self.canvas_base_url:
            missing.append("canvas_base_url")
        if not self.ffmpeg_path.strip():
            missing.append("ffmpeg_path")
        return missing


settings = Settings()
