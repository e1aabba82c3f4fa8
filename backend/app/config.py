from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Serial Modbus RTU (DEIF GC-1F/2 Option H2)
    SERIAL_PORT: str = "/dev/ttyUSB0"
    BAUDRATE: int = 9600
    PARITY: str = "N"
    STOPBITS: int = 1
    BYTESIZE: int = 8
    SLAVE_ID: int = 1
    MODBUS_TIMEOUT: float = 1.0

    # Redis bus
    REDIS_URL: str = "redis://redis:6379/0"
    TOPIC_PREFIX: str = "deif:gc1f2"
    RETAIN: bool = True          # keep last state under <prefix>:state without TTL
    STATE_TTL: int = 30          # seconds, used when RETAIN is off

    # Poller
    POLL_INTERVAL: float = 5.0   # <= 0: poll once and stop

    # Commands
    COMMAND_COOLDOWN: float = 5.0

    # Register layout (empty = bundled gc1f2.json)
    REGISTER_TABLE_PATH: str = ""

    # Device metadata
    DEVICE_NAME: str = ""
    DEVICE_ID: str = ""

    # Demo mode (simulated controller, no serial port needed)
    DEMO_MODE: bool = False

    # App
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def topic_prefix(self) -> str:
        return self.TOPIC_PREFIX.rstrip(":/")

    @property
    def device_id(self) -> str:
        return self.DEVICE_ID or f"deif-gc1f2-{self.SLAVE_ID}"

    @property
    def device_name(self) -> str:
        return self.DEVICE_NAME or f"DEIF GC-1F/2 ({self.SLAVE_ID})"


settings = Settings()
