from ipaddress import IPv4Network

from pydantic import BaseModel, Field, field_validator

from k3dpilot.core.config import DEFAULT_API_HOST, DEFAULT_API_PORT, DEFAULT_CLUSTER_NAME

SUBNET_AUTO = 'auto'


class PortWithNodeFilters(BaseModel):
    # [hostIP:][hostPort:]containerPort[/protocol]
    port: str
    node_filters: list[str] = Field(default_factory=list)


class VolumeWithNodeFilters(BaseModel):
    volume: str
    node_filters: list[str] = Field(default_factory=list)


class LabelWithNodeFilters(BaseModel):
    label: str
    node_filters: list[str] = Field(default_factory=list)

    @field_validator('label')
    @classmethod
    def check_key_value(cls, value: str) -> str:
        if '=' not in value or value.startswith('='):
            raise ValueError(f"Label '{value}' must have the form key=value")
        return value


class EnvVarWithNodeFilters(BaseModel):
    env_var: str
    node_filters: list[str] = Field(default_factory=list)

    @field_validator('env_var')
    @classmethod
    def check_key_value(cls, value: str) -> str:
        if '=' not in value or value.startswith('='):
            raise ValueError(f"Environment variable '{value}' must have the form KEY=value")
        return value


class ArgWithNodeFilters(BaseModel):
    arg: str
    node_filters: list[str] = Field(default_factory=list)


class ClusterCreateSchema(BaseModel):
    name: str = DEFAULT_CLUSTER_NAME
    servers: int = Field(default=1, ge=1)
    agents: int = Field(default=0, ge=0)
    image: str | None = None

    api_host: str = ''
    api_host_ip: str = DEFAULT_API_HOST
    api_port: int = Field(default=int(DEFAULT_API_PORT), ge=1, le=65535)

    network: str | None = None
    subnet: str | None = None
    token: str | None = None

    ports: list[PortWithNodeFilters] = Field(default_factory=list)
    volumes: list[VolumeWithNodeFilters] = Field(default_factory=list)
    labels: list[LabelWithNodeFilters] = Field(default_factory=list)
    env: list[EnvVarWithNodeFilters] = Field(default_factory=list)
    k3s_args: list[ArgWithNodeFilters] = Field(default_factory=list)

    timeout: float | None = Field(default=None, gt=0)
    wait: bool = True
    disable_loadbalancer: bool = False
    disable_image_volume: bool = False

    @field_validator('subnet')
    @classmethod
    def check_subnet(cls, value: str | None) -> str | None:
        if value is None or value == SUBNET_AUTO:
            return value
        IPv4Network(value)
        return value
