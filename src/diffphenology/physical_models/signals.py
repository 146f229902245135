"""Signals sent by the phenology engine.

Signals are plain strings, in the same manner as `pcse.signals`. They are delivered
through PyDispatcher with the sending `Phenology` instance as sender, so a handler only
receives the signals of the engine it was connected to.

**phase_changed**

Sent after the current phase changed, keyword arguments:

- `old_phase_name`: name of the phase that was left
- `new_phase_name`: name of the phase that is now current
- `event_stage_name`: end stage of the phase that was left

**phase_rewound**

Sent by `Phenology.reset_to_stage` once the engine was wound to the new stage.

**growth_stage_reached**

Sent once for every phase boundary crossed by the daily cascade.

**post_phenology_completed**

Sent at the end of a daily step, after all cascades, if the entity is still alive.
"""

phase_changed = "PHASE_CHANGED"
phase_rewound = "PHASE_REWOUND"
growth_stage_reached = "GROWTH_STAGE_REACHED"
post_phenology_completed = "POST_PHENOLOGY_COMPLETED"
