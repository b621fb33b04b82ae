"""Channel set reconciler — keep the host registry in line with the metadata.

- A described channel whose key is missing from the registry is created
  (synchronous, single float value, board samplerate).
- A described channel that already exists keeps its handle; only its
  samplerate, range and unit are refreshed.
- A registry channel carrying the data-channel key prefix whose name is no
  longer described is removed.  Channels without the prefix (diagnostic
  channels, operator-made channels) are never touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Tuple

from .calibration import EffectiveCalibration
from .host import DATA_SAMPLE_FORMAT, ChannelConfig, ChannelHandle, ChannelRegistry
from .metadata import BoardDescriptor, ChannelDescriptor


logger = logging.getLogger(__name__)

DATA_CH_KEY_PREFIX = "DATACHANNEL_"


def channel_range(
    board: BoardDescriptor,
    gain: float,
    offset: float,
) -> Tuple[float, float]:
    """Return the (min, max) calibrated value range of a channel on *board*."""
    adc_lo, adc_hi = board.adc_range
    if board.differential:
        lo = ((adc_lo - adc_hi) / 2 - 0.5) * gain - offset
        hi = ((adc_hi - adc_lo) / 2 - 0.5) * gain - offset
    else:
        lo = adc_lo * gain - offset
        hi = adc_hi * gain - offset
    return float(lo), float(hi)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    handles: Dict[str, ChannelHandle] = field(default_factory=dict)
    created: List[str] = field(default_factory=list)
    reused: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


class ChannelSetReconciler:
    """Diff a descriptor set against the host registry and apply the changes.

    Parameters
    ----------
    registry : ChannelRegistry
        Host channel registry.
    key_prefix : str
        Prefix that marks data channels owned by this engine.
    """

    def __init__(self, registry: ChannelRegistry, key_prefix: str = DATA_CH_KEY_PREFIX) -> None:
        self.registry = registry
        self.key_prefix = key_prefix

    def key_for(self, name: str) -> str:
        return self.key_prefix + name

    def channel_config(
        self,
        board: BoardDescriptor,
        descriptor: ChannelDescriptor,
        calibration: EffectiveCalibration,
    ) -> ChannelConfig:
        return ChannelConfig(
            name=descriptor.name,
            sample_format=DATA_SAMPLE_FORMAT,
            samplerate=board.samplerate,
            value_range=channel_range(board, float(calibration.gain), float(calibration.offset)),
            unit=descriptor.unit,
            deletable=True,
        )

    def reconcile(
        self,
        board: BoardDescriptor,
        channels: Mapping[str, ChannelDescriptor],
        calibrations: Mapping[str, EffectiveCalibration],
    ) -> ReconcileResult:
        """Create, refresh and remove registry channels to match *channels*.

        Returns
        -------
        ReconcileResult
            ``handles`` maps every described channel name to its handle.
        """
        result = ReconcileResult()

        for name, descriptor in channels.items():
            config = self.channel_config(board, descriptor, calibrations[name])
            handle = self.registry.lookup(self.key_for(name))
            if handle is None:
                handle = self.registry.create(self.key_for(name), config)
                result.created.append(name)
                logger.info("Created channel %s (%s, range=%s)", name, config.unit, config.value_range)
            else:
                self.registry.configure(handle, config)
                result.reused.append(name)
            result.handles[name] = handle

        for handle in self.registry.list():
            key = handle.instance_key()
            if key is None or not key.startswith(self.key_prefix):
                continue
            name = key[len(self.key_prefix):]
            if name not in channels:
                logger.info("Removing channel with key %s", key)
                self.registry.remove(handle)
                result.removed.append(name)

        logger.debug(
            "Reconciled channels: created=%s reused=%s removed=%s",
            result.created, result.reused, result.removed,
        )
        return result
