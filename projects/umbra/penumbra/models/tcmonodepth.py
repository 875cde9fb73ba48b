"""TCMonoDepth: temporally consistent monocular depth, fed raw [0, 255] RGB."""

from __future__ import annotations

import numpy as np

from .base import NetworkDescriptor, PreprocessParams


class TCMonoDepth(NetworkDescriptor):
    key = "tcmonodepth"
    label = "TCMonoDepth"
    model_file = "tcmonodepth_tcsmallnet_192x320.onnx"
    default_size = (320, 192)
    expected_inputs = 1

    def get_preprocess_params(self) -> PreprocessParams:
        return PreprocessParams(mean=(0.0, 0.0, 0.0), scale=(1.0, 1.0, 1.0), channel_major=True)

    def postprocess(self, image: np.ndarray) -> np.ndarray:
        lo = float(image.min()) if image.size else 0.0
        hi = float(image.max()) if image.size else 0.0
        if hi - lo <= 1e-12:
            image[...] = 0.0
            return image
        image -= lo
        image /= hi - lo
        return image
