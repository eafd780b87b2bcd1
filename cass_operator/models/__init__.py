from . import v1beta1
