"""Decoding of ``tensorhistorynode`` records.

A history row stores one ``TensorHistoryNode`` FlatBuffers table. Fields are
read by their declaration order in the Draw Things schema (see ``_NODE_LAYOUT``);
fields missing from a record take the dataclass default. Strings and numbers
default to empty/zero, with the exception of ``clip_id`` which defaults to
``-1`` so that a node is not mistaken for the first clip of a video.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import MISSING, dataclass, field, fields

from .flat import FlatTable


@dataclass(frozen=True)
class Control:
    file: str = ""
    weight: float = 0.0
    guidance_start: float = 0.0
    guidance_end: float = 0.0
    no_prompt: bool = False
    global_average_pooling: bool = False
    down_sampling_rate: float = 0.0
    control_mode: int = 0
    target_blocks: tuple[str, ...] = ()
    input_override: int = 0


@dataclass(frozen=True)
class LoRA:
    file: str = ""
    weight: float = 0.0
    mode: int = 0


@dataclass(frozen=True)
class HistoryNode:
    lineage: int = 0
    logical_time: int = 0
    start_width: int = 0
    start_height: int = 0
    seed: int = 0
    steps: int = 0
    guidance_scale: float = 0.0
    strength: float = 0.0
    model: str = ""
    tensor_id: int = 0
    mask_id: int = 0
    wall_clock: int = 0
    text_edits: int = 0
    text_lineage: int = 0
    batch_size: int = 0
    sampler: int = 0
    hires_fix: bool = False
    hires_fix_start_width: int = 0
    hires_fix_start_height: int = 0
    hires_fix_strength: float = 0.0
    upscaler: str = ""
    scale_factor: int = 0
    depth_map_id: int = 0
    generated: bool = False
    image_guidance_scale: float = 0.0
    seed_mode: int = 0
    clip_skip: int = 0
    controls: tuple[Control, ...] = ()
    scribble_id: int = 0
    pose_id: int = 0
    loras: tuple[LoRA, ...] = ()
    color_palette_id: int = 0
    mask_blur: float = 0.0
    custom_id: int = 0
    face_restoration: str = ""
    decode_with_attention: bool = False
    hires_fix_decode_with_attention: bool = False
    clip_weight: float = 0.0
    negative_prompt_for_image_prior: bool = False
    image_prior_steps: int = 0
    data_stored: int = 0
    preview_id: int = 0
    content_offset_x: int = 0
    content_offset_y: int = 0
    scale_factor_by_120: int = 0
    refiner_model: str = ""
    original_image_height: int = 0
    original_image_width: int = 0
    crop_top: int = 0
    crop_left: int = 0
    target_image_height: int = 0
    target_image_width: int = 0
    aesthetic_score: float = 0.0
    negative_aesthetic_score: float = 0.0
    zero_negative_prompt: bool = False
    refiner_start: float = 0.0
    negative_original_image_height: int = 0
    negative_original_image_width: int = 0
    shuffle_data_stored: int = 0
    fps_id: int = 0
    motion_bucket_id: int = 0
    cond_aug: float = 0.0
    start_frame_cfg: float = 0.0
    num_frames: int = 0
    mask_blur_outset: int = 0
    sharpness: float = 0.0
    shift: float = 0.0
    stage_2_steps: int = 0
    stage_2_cfg: float = 0.0
    stage_2_shift: float = 0.0
    tiled_decoding: bool = False
    decoding_tile_width: int = 0
    decoding_tile_height: int = 0
    decoding_tile_overlap: int = 0
    stochastic_sampling_gamma: float = 0.0
    preserve_original_after_inpaint: bool = False
    tiled_diffusion: bool = False
    diffusion_tile_width: int = 0
    diffusion_tile_height: int = 0
    diffusion_tile_overlap: int = 0
    upscaler_scale_factor: int = 0
    script_session_id: int = 0
    t5_text_encoder: bool = False
    separate_clip_l: bool = False
    clip_l_text: str = ""
    separate_open_clip_g: bool = False
    open_clip_g_text: str = ""
    speed_up_with_guidance_embed: bool = False
    guidance_embed: float = 0.0
    resolution_dependent_shift: bool = False
    profile_data: bytes = b""
    tea_cache_start: int = 0
    tea_cache_end: int = 0
    tea_cache_threshold: float = 0.0
    tea_cache: bool = False
    separate_t5: bool = False
    t5_text: str = ""
    tea_cache_max_skip_steps: int = 0
    text_prompt: str = ""
    negative_text_prompt: str = ""
    clip_id: int = -1
    index_in_a_clip: int = 0
    causal_inference_enabled: bool = False
    causal_inference: int = 0
    causal_inference_pad: int = 0
    cfg_zero_star: bool = False
    cfg_zero_init_steps: int = 0
    generation_time: float = 0.0

    @property
    def wall_clock_datetime(self) -> dt.datetime | None:
        return wall_clock_datetime(self.wall_clock)


# (field, kind) in schema declaration order; the position is the vtable slot.
_NODE_LAYOUT: tuple[tuple[str, str], ...] = (
    ("lineage", "int64"),
    ("logical_time", "int64"),
    ("start_width", "uint16"),
    ("start_height", "uint16"),
    ("seed", "uint32"),
    ("steps", "uint32"),
    ("guidance_scale", "float32"),
    ("strength", "float32"),
    ("model", "string"),
    ("tensor_id", "int64"),
    ("mask_id", "int64"),
    ("wall_clock", "int64"),
    ("text_edits", "int64"),
    ("text_lineage", "int64"),
    ("batch_size", "uint32"),
    ("sampler", "int8"),
    ("hires_fix", "bool"),
    ("hires_fix_start_width", "uint16"),
    ("hires_fix_start_height", "uint16"),
    ("hires_fix_strength", "float32"),
    ("upscaler", "string"),
    ("scale_factor", "uint16"),
    ("depth_map_id", "int64"),
    ("generated", "bool"),
    ("image_guidance_scale", "float32"),
    ("seed_mode", "int8"),
    ("clip_skip", "uint32"),
    ("controls", "controls"),
    ("scribble_id", "int64"),
    ("pose_id", "int64"),
    ("loras", "loras"),
    ("color_palette_id", "int64"),
    ("mask_blur", "float32"),
    ("custom_id", "int64"),
    ("face_restoration", "string"),
    ("decode_with_attention", "bool"),
    ("hires_fix_decode_with_attention", "bool"),
    ("clip_weight", "float32"),
    ("negative_prompt_for_image_prior", "bool"),
    ("image_prior_steps", "uint32"),
    ("data_stored", "int32"),
    ("preview_id", "int64"),
    ("content_offset_x", "int32"),
    ("content_offset_y", "int32"),
    ("scale_factor_by_120", "int32"),
    ("refiner_model", "string"),
    ("original_image_height", "uint32"),
    ("original_image_width", "uint32"),
    ("crop_top", "int32"),
    ("crop_left", "int32"),
    ("target_image_height", "uint32"),
    ("target_image_width", "uint32"),
    ("aesthetic_score", "float32"),
    ("negative_aesthetic_score", "float32"),
    ("zero_negative_prompt", "bool"),
    ("refiner_start", "float32"),
    ("negative_original_image_height", "uint32"),
    ("negative_original_image_width", "uint32"),
    ("shuffle_data_stored", "int32"),
    ("fps_id", "uint32"),
    ("motion_bucket_id", "uint32"),
    ("cond_aug", "float32"),
    ("start_frame_cfg", "float32"),
    ("num_frames", "uint32"),
    ("mask_blur_outset", "int32"),
    ("sharpness", "float32"),
    ("shift", "float32"),
    ("stage_2_steps", "uint32"),
    ("stage_2_cfg", "float32"),
    ("stage_2_shift", "float32"),
    ("tiled_decoding", "bool"),
    ("decoding_tile_width", "uint16"),
    ("decoding_tile_height", "uint16"),
    ("decoding_tile_overlap", "uint16"),
    ("stochastic_sampling_gamma", "float32"),
    ("preserve_original_after_inpaint", "bool"),
    ("tiled_diffusion", "bool"),
    ("diffusion_tile_width", "uint16"),
    ("diffusion_tile_height", "uint16"),
    ("diffusion_tile_overlap", "uint16"),
    ("upscaler_scale_factor", "uint8"),
    ("script_session_id", "uint64"),
    ("t5_text_encoder", "bool"),
    ("separate_clip_l", "bool"),
    ("clip_l_text", "string"),
    ("separate_open_clip_g", "bool"),
    ("open_clip_g_text", "string"),
    ("speed_up_with_guidance_embed", "bool"),
    ("guidance_embed", "float32"),
    ("resolution_dependent_shift", "bool"),
    ("profile_data", "blob"),
    ("tea_cache_start", "int32"),
    ("tea_cache_end", "int32"),
    ("tea_cache_threshold", "float32"),
    ("tea_cache", "bool"),
    ("separate_t5", "bool"),
    ("t5_text", "string"),
    ("tea_cache_max_skip_steps", "int32"),
    ("text_prompt", "string"),
    ("negative_text_prompt", "string"),
    ("clip_id", "int64"),
    ("index_in_a_clip", "int32"),
    ("causal_inference_enabled", "bool"),
    ("causal_inference", "int32"),
    ("causal_inference_pad", "int32"),
    ("cfg_zero_star", "bool"),
    ("cfg_zero_init_steps", "int32"),
    ("generation_time", "float64"),
)

# Field name to (field index, kind), for code that writes history records.
NODE_SLOTS = {name: (index, kind) for index, (name, kind) in enumerate(_NODE_LAYOUT)}

_NODE_DEFAULTS = {f.name: f.default for f in fields(HistoryNode) if f.default is not MISSING}


def _decode_control(table: FlatTable) -> Control:
    return Control(
        file=table.string(0),
        weight=table.scalar(1, "float32", 0.0),
        guidance_start=table.scalar(2, "float32", 0.0),
        guidance_end=table.scalar(3, "float32", 0.0),
        no_prompt=table.scalar(4, "bool", False),
        global_average_pooling=table.scalar(5, "bool", False),
        down_sampling_rate=table.scalar(6, "float32", 0.0),
        control_mode=table.scalar(7, "int8"),
        target_blocks=tuple(table.strings(8)),
        input_override=table.scalar(9, "int8"),
    )


def _decode_lora(table: FlatTable) -> LoRA:
    return LoRA(
        file=table.string(0),
        weight=table.scalar(1, "float32", 0.0),
        mode=table.scalar(2, "int8"),
    )


def decode_history(blob: bytes) -> HistoryNode:
    """Decode one history record, raising MalformedRecordError on bad input."""
    table = FlatTable.root(blob)
    values = {}
    for index, (name, kind) in enumerate(_NODE_LAYOUT):
        default = _NODE_DEFAULTS[name]
        if kind == "string":
            values[name] = table.string(index, default)
        elif kind == "blob":
            raw = table.blob(index)
            values[name] = default if raw is None else raw
        elif kind == "controls":
            values[name] = tuple(_decode_control(item) for item in table.tables(index))
        elif kind == "loras":
            values[name] = tuple(_decode_lora(item) for item in table.tables(index))
        else:
            values[name] = table.scalar(index, kind, default)
    return HistoryNode(**values)


def wall_clock_datetime(value: int) -> dt.datetime | None:
    """Interpret a stored wall clock as microseconds or seconds since the epoch."""
    try:
        if value > 1_000_000_000_000_000:
            return dt.datetime.fromtimestamp(value / 1_000_000, tz=dt.UTC)
        if value > 1_000_000_000:
            return dt.datetime.fromtimestamp(value, tz=dt.UTC)
    except (OverflowError, OSError, ValueError):
        return None
    return None


@dataclass(frozen=True)
class ModelWeight:
    file: str
    weight: float


@dataclass(frozen=True)
class HistoryImport:
    """The part of a history row that is copied into the cache."""

    row_id: int
    lineage: int
    logical_time: int
    tensor_id: str | None
    preview_id: int
    clip_id: int
    num_frames: int | None
    index_in_a_clip: int
    generated: bool
    model: str
    refiner_model: str
    upscaler: str
    upscaler_scale_factor: int
    refiner_start: float
    prompt: str
    negative_prompt: str
    seed: int
    steps: int
    guidance_scale: float
    strength: float
    shift: float
    sampler: int
    seed_mode: int
    start_width: int
    start_height: int
    hires_fix: bool
    tiled_decoding: bool
    tiled_diffusion: bool
    tea_cache: bool
    cfg_zero_star: bool
    wall_clock: dt.datetime | None
    has_mask: bool = False
    has_depth: bool = False
    has_pose: bool = False
    has_color: bool = False
    has_custom: bool = False
    has_scribble: bool = False
    has_shuffle: bool = False
    loras: tuple[ModelWeight, ...] = field(default=())
    controls: tuple[ModelWeight, ...] = field(default=())

    @classmethod
    def from_node(cls, row_id: int, node: HistoryNode, **side) -> HistoryImport:
        return cls(
            row_id=row_id,
            lineage=node.lineage,
            logical_time=node.logical_time,
            tensor_id=side.pop("tensor_id", None),
            preview_id=node.preview_id,
            clip_id=node.clip_id,
            num_frames=node.num_frames if node.clip_id >= 0 else None,
            index_in_a_clip=node.index_in_a_clip,
            generated=node.generated,
            model=node.model.strip(),
            refiner_model=node.refiner_model.strip(),
            upscaler=node.upscaler.strip(),
            upscaler_scale_factor=node.upscaler_scale_factor,
            refiner_start=node.refiner_start,
            prompt=node.text_prompt.strip(),
            negative_prompt=node.negative_text_prompt.strip(),
            seed=node.seed,
            steps=node.steps,
            guidance_scale=node.guidance_scale,
            strength=node.strength,
            shift=node.shift,
            sampler=node.sampler,
            seed_mode=node.seed_mode,
            start_width=node.start_width,
            start_height=node.start_height,
            hires_fix=node.hires_fix,
            tiled_decoding=node.tiled_decoding,
            tiled_diffusion=node.tiled_diffusion,
            tea_cache=node.tea_cache,
            cfg_zero_star=node.cfg_zero_star,
            wall_clock=node.wall_clock_datetime,
            loras=tuple(ModelWeight(lora.file, lora.weight) for lora in node.loras if lora.file),
            controls=tuple(
                ModelWeight(control.file, control.weight)
                for control in node.controls
                if control.file
            ),
            **side,
        )
