"""Draw Things generation metadata embedded in exported PNGs.

Draw Things reads generation parameters back from an XMP packet whose
``exif:UserComment`` holds a JSON document and whose ``dc:description`` holds
the human readable "prompt / negative / parameters" text.
"""

from __future__ import annotations

import json
from typing import Any
from xml.sax.saxutils import escape

from .enums import Sampler, SeedMode
from .records.tensor_history import HistoryNode

XMP_KEY = "XML:com.adobe.xmp"

# start_width/start_height and tile sizes are stored in 64 pixel units.
_UNIT = 64


def _number(value: float) -> int | float:
    """Whole floats serialize as ints, matching Draw Things' own output."""
    if float(value).is_integer():
        return int(value)
    return round(float(value), 6)


def _desc_float(value: float) -> str:
    text = f"{round(float(value), 6):g}"
    return text if "." in text or "e" in text else f"{text}.0"


def build_metadata(node: HistoryNode) -> dict[str, Any]:
    sampler = Sampler.from_value(node.sampler)
    seed_mode = SeedMode.from_value(node.seed_mode)
    width = node.start_width * _UNIT
    height = node.start_height * _UNIT
    v2: dict[str, Any] = {
        "aestheticScore": _number(node.aesthetic_score),
        "batchCount": 1,
        "batchSize": node.batch_size,
        "cfgZeroStar": node.cfg_zero_star,
        "clipSkip": node.clip_skip,
        "clipWeight": _number(node.clip_weight),
        "controls": [
            {
                "file": control.file,
                "weight": _number(control.weight),
                "guidanceStart": _number(control.guidance_start),
                "guidanceEnd": _number(control.guidance_end),
                "noPrompt": control.no_prompt,
            }
            for control in node.controls
        ],
        "guidanceScale": _number(node.guidance_scale),
        "height": height,
        "hiresFix": node.hires_fix,
        "hiresFixHeight": node.hires_fix_start_height * _UNIT,
        "hiresFixStrength": _number(node.hires_fix_strength),
        "hiresFixWidth": node.hires_fix_start_width * _UNIT,
        "imageGuidanceScale": _number(node.image_guidance_scale),
        "loras": [
            {"file": lora.file, "weight": _number(lora.weight), "mode": lora.mode}
            for lora in node.loras
        ],
        "maskBlur": _number(node.mask_blur),
        "maskBlurOutset": node.mask_blur_outset,
        "model": node.model,
        "numFrames": node.num_frames,
        "refinerStart": _number(node.refiner_start),
        "sampler": node.sampler,
        "seed": node.seed,
        "seedMode": node.seed_mode,
        "sharpness": _number(node.sharpness),
        "shift": _number(node.shift),
        "steps": node.steps,
        "strength": _number(node.strength),
        "teaCache": node.tea_cache,
        "tiledDecoding": node.tiled_decoding,
        "tiledDiffusion": node.tiled_diffusion,
        "upscalerScaleFactor": node.upscaler_scale_factor,
        "width": width,
        "zeroNegativePrompt": node.zero_negative_prompt,
    }
    if node.refiner_model:
        v2["refinerModel"] = node.refiner_model
    if node.upscaler:
        v2["upscaler"] = node.upscaler
    return {
        "c": node.text_prompt.strip(),
        "model": node.model,
        "profile": {"duration": 0, "timings": []},
        "sampler": sampler.label,
        "scale": _number(node.guidance_scale),
        "seed": node.seed,
        "seed_mode": seed_mode.label,
        "shift": _number(node.shift),
        "size": f"{width}x{height}",
        "steps": node.steps,
        "strength": _number(node.strength),
        "uc": node.negative_text_prompt.strip(),
        "v2": v2,
    }


def build_description(metadata: dict[str, Any]) -> str:
    return (
        f"{metadata['c']}\n-{metadata['uc']}\n"
        f"Steps: {metadata['steps']}, Sampler: {metadata['sampler']}, "
        f"Guidance Scale: {_desc_float(metadata['scale'])}, Seed: {metadata['seed']}, "
        f"Size: {metadata['size']}, Model: {metadata['model']}, "
        f"Strength: {_desc_float(metadata['strength'])}, Seed Mode: {metadata['seed_mode']}, "
        f"Shift: {_desc_float(metadata['shift'])}"
    )


def build_xmp(node: HistoryNode) -> str:
    metadata = build_metadata(node)
    payload = json.dumps(metadata, ensure_ascii=False, separators=(",", ":"))
    description = escape(build_description(metadata)).replace("\n", "&#xA;")
    return f"""<x:xmpmeta xmlns:x="adobe:ns:meta/" x:xmptk="XMP Core 6.0.0">
   <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">
      <rdf:Description rdf:about=""
            xmlns:dc="http://purl.org/dc/elements/1.1/"
            xmlns:xmp="http://ns.adobe.com/xap/1.0/"
            xmlns:exif="http://ns.adobe.com/exif/1.0/">
         <dc:description>
            <rdf:Alt>
               <rdf:li xml:lang="x-default">{description}</rdf:li>
            </rdf:Alt>
         </dc:description>
         <xmp:CreatorTool>Draw Things</xmp:CreatorTool>
         <exif:UserComment>
            <rdf:Alt>
               <rdf:li xml:lang="x-default">{escape(payload)}</rdf:li>
            </rdf:Alt>
         </exif:UserComment>
      </rdf:Description>
   </rdf:RDF>
</x:xmpmeta>
"""
