"""
Key derivation parameter validation.

Bounds apply to Argon2 parameters as they are configured on clients:
memory in KB, iteration count, and lane count.
"""

from typing import Any, Iterable, Mapping, Optional

from ..core.gate import ValidationResult

ALLOWED_KDF_ALGORITHMS = ("Argon2id", "Argon2i", "Argon2d")

MIN_MEMORY_KB = 65536  # 64 MB
MAX_MEMORY_KB = 2097152  # 2 GB
MIN_ITERATIONS = 3
MAX_ITERATIONS = 100
MIN_PARALLELISM = 1
MAX_PARALLELISM = 32

RECOMMENDED_MIN_MEMORY_KB = 131072
LOW_MEMORY_DEVICE_KB = 524288
HIGH_MEMORY_SINGLE_LANE_KB = 262144
MAX_MEMORY_PER_ITERATION = 50000

# Derivation time window considered safe, milliseconds
MIN_DERIVATION_MS = 100
MAX_DERIVATION_MS = 5000


class KdfValidator:
    """Validates KDF parameters and estimates derivation cost."""

    def __init__(self, allowed_algorithms: Optional[Iterable[str]] = None):
        self.allowed_algorithms = tuple(allowed_algorithms or ALLOWED_KDF_ALGORITHMS)

    def validate_kdf_params(self, params: Mapping[str, Any]) -> ValidationResult:
        result = ValidationResult()
        algorithm = params.get("algorithm")
        memory = params.get("memory", 0)
        iterations = params.get("iterations", 0)
        parallelism = params.get("parallelism", 0)

        if algorithm not in self.allowed_algorithms:
            result.add_error(
                f"KDF algorithm '{algorithm}' not allowed. "
                f"Allowed: {', '.join(self.allowed_algorithms)}"
            )

        if memory < MIN_MEMORY_KB:
            result.add_error(
                f"KDF memory too low: {memory}KB, "
                f"minimum {MIN_MEMORY_KB}KB required for security"
            )
        elif memory > MAX_MEMORY_KB:
            result.add_error(
                f"KDF memory too high: {memory}KB, maximum {MAX_MEMORY_KB}KB allowed"
            )

        if iterations < MIN_ITERATIONS:
            result.add_error(
                f"KDF iterations too low: {iterations}, minimum {MIN_ITERATIONS} required"
            )
        elif iterations > MAX_ITERATIONS:
            result.add_error(
                f"KDF iterations too high: {iterations}, maximum {MAX_ITERATIONS} allowed"
            )

        if parallelism < MIN_PARALLELISM:
            result.add_error(
                f"KDF parallelism too low: {parallelism}, "
                f"minimum {MIN_PARALLELISM} required"
            )
        elif parallelism > MAX_PARALLELISM:
            result.add_error(
                f"KDF parallelism too high: {parallelism}, "
                f"maximum {MAX_PARALLELISM} allowed"
            )

        if algorithm in self.allowed_algorithms and algorithm != "Argon2id":
            result.add_warning(
                f"Consider using Argon2id instead of {algorithm} for better security"
            )

        if MIN_MEMORY_KB <= memory < RECOMMENDED_MIN_MEMORY_KB:
            result.add_warning(
                f"Memory setting {memory}KB may be too low for optimal security "
                "on modern devices"
            )
        elif LOW_MEMORY_DEVICE_KB < memory <= MAX_MEMORY_KB:
            result.add_warning(
                f"Memory setting {memory}KB may cause performance issues "
                "on low-memory devices"
            )

        if iterations > 0 and memory / iterations > MAX_MEMORY_PER_ITERATION:
            result.add_warning(
                "Consider increasing iterations relative to memory "
                "for better time-memory tradeoff"
            )

        if parallelism == 1 and memory > HIGH_MEMORY_SINGLE_LANE_KB:
            result.add_warning(
                "Consider increasing parallelism for better performance "
                "with high memory settings"
            )

        return result

    @staticmethod
    def estimate_derivation_ms(params: Mapping[str, Any]) -> int:
        """
        Rough derivation time on a reference device.

        100ms per iteration at 64MB, scaled linearly by memory, and
        reduced by parallelism down to half.
        """
        memory = params.get("memory", 0)
        iterations = params.get("iterations", 0)
        parallelism = params.get("parallelism", 1) or 1

        memory_factor = memory / MIN_MEMORY_KB
        parallel_factor = max(0.5, 1 / parallelism)
        return round(iterations * 100 * memory_factor * parallel_factor)

    def validate_timing_attack_resistance(
        self,
        params: Mapping[str, Any],
    ) -> ValidationResult:
        result = ValidationResult()
        estimated = self.estimate_derivation_ms(params)

        if estimated < MIN_DERIVATION_MS:
            result.add_warning(
                f"KDF parameters may complete too quickly ({estimated}ms), "
                "consider increasing for timing attack resistance"
            )
        elif estimated > MAX_DERIVATION_MS:
            result.add_warning(
                f"KDF parameters may take too long ({estimated}ms), "
                "consider optimizing for user experience"
            )

        return result
