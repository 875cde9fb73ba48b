"""SINet portrait segmentation: single frame, 2-channel softmax output at 320x320."""

from __future__ import annotations

from .base import NetworkDescriptor, PreprocessParams


class SINet(NetworkDescriptor):
    key = "sinet"
    label = "SINet"
    model_file = "SINet_Softmax_simple.onnx"
    default_size = (320, 320)
    expected_inputs = 1
    # channel 1 of the softmax map is the foreground probability
    output_channel = 1

    def get_preprocess_params(self) -> PreprocessParams:
        return PreprocessParams(
            mean=(102.890434, 111.25247, 126.91212),
            scale=(62.93292 * 255.0, 62.82138 * 255.0, 66.355705 * 255.0),
            channel_major=True,
        )
