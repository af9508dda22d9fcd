import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from loopcalc.schemas.parameters import CircuitParameters
from loopcalc.schemas.validation import ValidationLimits

# Ohms per 1000 ft, solid copper
WIRE_RESISTANCE: dict[str, float] = {
    "18 AWG": 6.385,
    "16 AWG": 4.016,
    "14 AWG": 2.525,
    "12 AWG": 1.588,
    "10 AWG": 0.999,
    "8 AWG": 0.628,
}


class Settings(BaseSettings):
    debug: bool = False
    log_level: str = "INFO"

    # Circuit defaults
    system_voltage: float = 29.0
    min_voltage: float = 16.0
    max_load: float = 3.0
    reserved_percent: int = 20
    wire_gauge: str = "16 AWG"
    supply_distance: float = 50.0
    routing_overhead: float = 1.15
    wire_resistance: dict[str, float] = Field(
        default_factory=lambda: dict(WIRE_RESISTANCE)
    )

    # Validation
    max_voltage_drop_percent: float = 10.0
    max_circuit_length: float = 3000.0
    voltage_warning_margin: float = 2.0

    # Saved circuits
    database_url: str = "sqlite:///circuits.db"

    model_config = SettingsConfigDict(
        env_prefix="LOOPCALC_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    def resistance_for(self, gauge: str) -> float:
        try:
            return self.wire_resistance[gauge]
        except KeyError:
            raise ValueError(
                f"No resistance configured for wire gauge '{gauge}'"
            ) from None

    def circuit_parameters(self, wire_gauge: str | None = None) -> CircuitParameters:
        gauge = wire_gauge or self.wire_gauge
        reserved = self.reserved_percent / 100.0
        return CircuitParameters(
            system_voltage=self.system_voltage,
            min_voltage=self.min_voltage,
            max_load=self.max_load,
            safety_percent=reserved,
            usable_load=self.max_load * (1 - reserved),
            wire_gauge=gauge,
            resistance=self.resistance_for(gauge),
            supply_distance=self.supply_distance,
            routing_overhead=self.routing_overhead,
        )

    def validation_limits(self) -> ValidationLimits:
        return ValidationLimits(
            max_voltage_drop_percent=self.max_voltage_drop_percent,
            max_circuit_length=self.max_circuit_length,
            voltage_warning_margin=self.voltage_warning_margin,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    """Install a root handler and set the package log level from settings."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level '{settings.log_level}'")
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("loopcalc").setLevel(level)
