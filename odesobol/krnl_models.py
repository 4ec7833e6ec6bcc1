import numpy as np


# ------------------------------------------ Exponential decay -----------------------------------------
# dx/dt = -p * x

def decay_pars():
    # Parameters: [p (decay rate)]
    names = ['p']
    pmin = [0.5]  # Minimum bounds
    pmax = [1.5]  # Maximum bounds
    return names, pmin, pmax


def exponential_decay(t, y, pars):
    return [-pars['p'] * y[0]]


# ------------------------------------------ Decay with an inert parameter -----------------------------------------
# dx/dt = -a * x; 'b' is sampled but never enters the right-hand side

def inert_decay_pars():
    names = ['a', 'b']
    pmin = [0.5, 0.0]
    pmax = [1.5, 10.0]
    return names, pmin, pmax


def inert_decay(t, y, pars):
    return [-pars['a'] * y[0]]


# ------------------------------------------ Lotka-Volterra -----------------------------------------
# Predator-prey system with logistic prey growth

def lotka_volterra_pars():
    # Parameters: [ingestion rate, prey growth rate, predator mortality, assimilation efficiency, carrying capacity]
    names = ['rIng', 'rGrow', 'rMort', 'assEff', 'K']
    pmin = [0.05, 0.05, 0.05, 0.05, 1]
    pmax = [1.00, 3.00, 0.95, 0.95, 20]
    return names, pmin, pmax


def lotka_volterra(t, y, pars):
    prey, predator = y

    ingestion = pars['rIng'] * prey * predator
    growth_prey = pars['rGrow'] * prey * (1 - prey / pars['K'])
    mort_predator = pars['rMort'] * predator

    dprey = growth_prey - ingestion
    dpredator = ingestion * pars['assEff'] - mort_predator
    return [dprey, dpredator]


# ------------------------------------------ FitzHugh-Nagumo -----------------------------------------
# Ramsay et al. (2007), states [Voltage, Current]

def fitzhugh_nagumo_pars():
    names = ['a', 'b', 's']
    pmin = [0.18, 0.18, 2.8]
    pmax = [0.22, 0.22, 3.2]
    return names, pmin, pmax


def fitzhugh_nagumo(t, y, pars):
    voltage, current = y
    s = pars['s']

    dvoltage = s * (voltage - voltage ** 3 / 3 + current)
    dcurrent = -1 / s * (voltage - pars['a'] + pars['b'] * current)
    return [dvoltage, dcurrent]


# ------------------------------------------ Blow-up -----------------------------------------
# dx/dt = x^2 with x(0) = 1 escapes to infinity at t = 1; used to exercise solver failures

def blow_up(t, y, pars):
    return [pars.get('c', 1.0) * np.square(y[0])]


def bounds_to_rargs(pmin, pmax):
    """Uniform argument records for ``rargs`` from lower and upper bounds."""
    return [{'min': lo, 'max': hi} for lo, hi in zip(pmin, pmax)]
