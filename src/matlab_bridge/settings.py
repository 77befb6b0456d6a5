from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    # Remote MATLAB machine and SSH credentials
    matlab_host: str = "192.168.1.111"
    matlab_ssh_port: int = 22
    matlab_ssh_user: str = "samue"
    matlab_ssh_key_path: str | None = None
    matlab_ssh_password: str | None = None

    # MATLAB MCP worker on the remote machine
    matlab_mcp_port: int = 3000
    matlab_server_command: str = (
        "cd C:/Users/samue/matlab-mcp-server && node build/index.js"
    )
    matlab_probe_command: str = "netstat -an | findstr :{port}"
    matlab_path: str = "E:/MATLAB/bin/matlab.exe"

    direct_timeout: float = Field(default=1.0, gt=0)
    ssh_timeout: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    sse_ping_interval: float = Field(default=30.0, gt=0)


settings = Settings()
