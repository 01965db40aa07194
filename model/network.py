import logging

import torch
import torch.nn as nn
import torch.nn.functional as F
from torchvision import models

logger = logging.getLogger(__name__)

# Spatial input size (height, width) each backbone was trained on
INPUT_SIZES = {
    "googlenet": (224, 224),
    "resnet18": (224, 224),
}


def _load_backbone(name, pretrained):
    # Returns the torchvision network and the width of its pooled features
    if name == "googlenet":
        # Auxiliary heads are dropped after the pretrained weights load
        if pretrained:
            net = models.googlenet(
                weights=models.GoogLeNet_Weights.DEFAULT,
                transform_input=False,
            )
        else:
            net = models.googlenet(
                weights=None,
                aux_logits=False,
                transform_input=False,
                init_weights=True,
            )
    elif name == "resnet18":
        weights = models.ResNet18_Weights.DEFAULT if pretrained else None
        net = models.resnet18(weights=weights)
    else:
        raise ValueError(
            f"Unknown backbone: {name}. Expected one of {sorted(INPUT_SIZES)}."
        )
    return net, net.fc.in_features


class FhrTransferNet(nn.Module):
    """Pretrained image classifier with its output layers swapped for a new head.

    The original 1000-way linear layer is removed so the backbone ends at the
    global-average-pooling output; a fresh linear layer sized to
    ``num_classes`` sits on top. Softmax and the classification output are
    supplied by ``CrossEntropyLoss`` while training and by ``predict_proba``
    at inference.
    """

    def __init__(self, num_classes=3, backbone="googlenet", pretrained=True, freeze_backbone=False):
        super().__init__()
        net, in_features = _load_backbone(backbone, pretrained)
        net.fc = nn.Identity()
        self.backbone_name = backbone
        self.input_size = INPUT_SIZES[backbone]
        self.backbone = net
        self.classifier = nn.Linear(in_features, num_classes)

        if freeze_backbone:
            for param in self.backbone.parameters():
                param.requires_grad = False

        logger.info(
            "Built %s (pretrained=%s, frozen=%s) with %d-way head on %d features.",
            backbone,
            pretrained,
            freeze_backbone,
            num_classes,
            in_features,
        )

    def forward(self, x):
        # Pooled backbone features -> class logits
        return self.classifier(self.backbone(x))

    @torch.no_grad()
    def predict_proba(self, x):
        return F.softmax(self.forward(x), dim=1)


def parameter_groups(model, lr, head_lr_factor=10.0, backbone_lr_factor=1.0):
    # The new head learns faster than the transferred layers
    groups = []
    backbone_params = [p for p in model.backbone.parameters() if p.requires_grad]
    if backbone_params:
        groups.append({"params": backbone_params, "lr": lr * backbone_lr_factor})
    groups.append({"params": list(model.classifier.parameters()), "lr": lr * head_lr_factor})
    return groups
