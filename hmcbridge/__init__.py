# -*- coding: utf-8 -*-
""" Step-wise sampler interface to an adaptive Hamiltonian Monte Carlo engine. """

__license__ = 'MIT'

import hmcbridge.adapters
import hmcbridge.autodiff
import hmcbridge.engine
import hmcbridge.errors
import hmcbridge.integrators
import hmcbridge.logdensity
import hmcbridge.metrics
import hmcbridge.models
import hmcbridge.parameters
import hmcbridge.samplers
import hmcbridge.stagers
import hmcbridge.states
import hmcbridge.systems
import hmcbridge.transforms
import hmcbridge.transitions
import hmcbridge.utils
